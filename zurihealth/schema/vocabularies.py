# zurihealth/schema/vocabularies.py
"""Versioned vocabularies for enumerated columns.

A vocabulary only ever grows. Members are introduced by a release number and
can later be marked deprecated; a deprecated member stays readable but is no
longer accepted on writes. Dropping a member that was never deprecated is a
breaking change and is rejected by ``check_vocabulary_evolution``.
"""
import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple

from zurihealth.errors import MigrationConflictError


@dataclass(frozen=True)
class Vocabulary:
    name: str
    releases: Tuple[Tuple[int, Tuple[str, ...]], ...]
    deprecations: Tuple[Tuple[str, int], ...] = ()

    @property
    def version(self) -> int:
        versions = [version for version, _ in self.releases]
        versions.extend(version for _, version in self.deprecations)
        return max(versions)

    @property
    def members(self) -> Tuple[str, ...]:
        return tuple(member for _, added in sorted(self.releases) for member in added)

    @property
    def deprecated(self) -> FrozenSet[str]:
        return frozenset(member for member, _ in self.deprecations)

    @property
    def writable(self) -> Tuple[str, ...]:
        return tuple(member for member in self.members if member not in self.deprecated)

    def introduced_in(self, member: str) -> int:
        for version, added in self.releases:
            if member in added:
                return version
        raise KeyError(f"{member!r} is not a member of vocabulary {self.name!r}")

    def members_at(self, version: int) -> Tuple[str, ...]:
        return tuple(
            member for release, added in sorted(self.releases) if release <= version for member in added
        )

    def is_writable(self, value: str) -> bool:
        return value in self.members and value not in self.deprecated

    def as_enum(self, class_name: str):
        """Build a ``str`` enum whose names are the upper-cased members."""
        pairs = [(member.upper().replace("-", "_"), member) for member in self.members]
        return enum.Enum(class_name, pairs, type=str)


def check_vocabulary_evolution(previous: Vocabulary, current: Vocabulary) -> None:
    """Reject non-additive changes between two released versions of a vocabulary."""
    if previous.name != current.name:
        raise ValueError(f"Cannot compare vocabulary {previous.name!r} with {current.name!r}")

    if current.version < previous.version:
        raise MigrationConflictError(
            f"Vocabulary {current.name!r} went backwards from version {previous.version} to {current.version}"
        )

    removed = [member for member in previous.members if member not in current.members]
    undeprecated = [member for member in removed if member not in previous.deprecated]
    if undeprecated:
        raise MigrationConflictError(
            f"Vocabulary {current.name!r} drops {', '.join(undeprecated)} without a deprecation step",
            details={"vocabulary": current.name, "members": undeprecated},
        )

    revived = [
        member for member in previous.deprecated
        if member in current.members and member not in current.deprecated
    ]
    if revived:
        raise MigrationConflictError(
            f"Vocabulary {current.name!r} un-deprecates {', '.join(sorted(revived))}",
            details={"vocabulary": current.name, "members": sorted(revived)},
        )


VOCABULARIES: Dict[str, Vocabulary] = {
    vocabulary.name: vocabulary
    for vocabulary in (
        Vocabulary("user_role", (
            (1, ("patient", "doctor", "admin", "staff")),
            (2, ("nurse", "receptionist", "lab-technician", "pharmacist")),
        )),
        Vocabulary("gender", ((1, ("male", "female", "other")),)),
        Vocabulary(
            "appointment_type",
            ((1, ("in-person", "video")), (2, ("telehealth",))),
            deprecations=(("video", 2),),
        ),
        Vocabulary("appointment_status", ((1, ("scheduled", "completed", "cancelled", "no-show")),)),
        Vocabulary("record_status", ((1, ("draft", "final")),)),
        Vocabulary("prescription_status", ((1, ("active", "completed", "cancelled")),)),
        Vocabulary("medication_category", ((1, (
            "ANTIBIOTIC", "ANALGESIC", "ANTIVIRAL", "ANTIHISTAMINE", "ANTIHYPERTENSIVE",
            "ANTIDIABETIC", "PSYCHIATRIC", "CARDIAC", "RESPIRATORY", "SUPPLEMENTS", "OTHER",
        )),)),
        Vocabulary("medication_form", ((1, (
            "TABLET", "CAPSULE", "SYRUP", "INJECTION", "CREAM", "OINTMENT", "DROPS",
            "INHALER", "POWDER", "OTHER",
        )),)),
        Vocabulary("lab_category", (
            (1, (
                "HEMATOLOGY", "BIOCHEMISTRY", "MICROBIOLOGY", "IMMUNOLOGY", "URINALYSIS",
                "IMAGING", "PATHOLOGY", "OTHER",
            )),
            (2, ("MOLECULAR",)),
        )),
        Vocabulary("test_result_status", ((1, ("normal", "perfect", "needs-attention")),)),
        Vocabulary("inventory_status", ((1, ("in-stock", "low-stock", "out-of-stock")),)),
        Vocabulary("bill_status", ((1, ("pending", "paid", "overdue", "cancelled")),)),
        Vocabulary("department_status", ((1, ("active", "inactive")),)),
    )
}
