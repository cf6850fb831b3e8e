# zurihealth/utils/clock.py
from datetime import datetime

import pytz

from zurihealth.config import settings

# Timezone setup
HOSPITAL_TZ = pytz.timezone(settings.TIMEZONE)


def hospital_now():
    return datetime.now(HOSPITAL_TZ)
