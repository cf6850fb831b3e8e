# zurihealth/schemas/common.py
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict
from pydantic.functional_validators import AfterValidator, BeforeValidator

from zurihealth.schema.vocabularies import VOCABULARIES


class Payload(BaseModel):
    """Closed payload shape: unknown fields are rejected."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def _unwrap_enum(value: Any) -> Any:
    return getattr(value, "value", value)


def Member(vocabulary: str):
    """String field restricted to the writable members of a vocabulary."""
    entries = VOCABULARIES[vocabulary]

    def check(value: str) -> str:
        if value in entries.deprecated:
            raise ValueError(
                f"'{value}' is retired from {vocabulary}; use one of {', '.join(entries.writable)}"
            )
        if value not in entries.members:
            raise ValueError(f"'{value}' is not one of {', '.join(entries.writable)}")
        return value

    return Annotated[str, BeforeValidator(_unwrap_enum), AfterValidator(check)]
