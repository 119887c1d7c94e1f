"""Verification checklists, one variant per listing verification level.

Stored on the "Document Verification" milestone as JSON tagged by ``level``
and always parsed back through ``checklist_adapter``.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class DocsUploadedChecklist(BaseModel):
    """Level 1: documents uploaded by the seller."""
    model_config = ConfigDict(extra="forbid")

    level: Literal[1] = 1
    docs_complete: bool = False
    docs_readable: bool = False
    info_consistent: bool = False

    def items(self) -> dict[str, bool]:
        return self.model_dump(exclude={"level"})

    def is_complete(self) -> bool:
        return all(self.items().values())

    def unchecked(self) -> list[str]:
        return [name for name, checked in self.items().items() if not checked]


class PlatformReviewedChecklist(DocsUploadedChecklist):
    """Level 2: reviewed by platform staff."""
    level: Literal[2] = 2
    seller_verified: bool = False
    location_verified: bool = False
    no_duplicates: bool = False
    price_reasonable: bool = False
    no_fraud_flags: bool = False


class OfficialVerifiedChecklist(PlatformReviewedChecklist):
    """Level 3: verified against official land records."""
    level: Literal[3] = 3
    lc_search: bool = False
    title_valid: bool = False
    encumbrance_check: bool = False
    boundary_survey: bool = False
    legal_review: bool = False


VerificationChecklist = Annotated[
    Union[DocsUploadedChecklist, PlatformReviewedChecklist, OfficialVerifiedChecklist],
    Field(discriminator="level"),
]

checklist_adapter: TypeAdapter[VerificationChecklist] = TypeAdapter(VerificationChecklist)

_BY_LEVEL: dict[int, type[DocsUploadedChecklist]] = {
    1: DocsUploadedChecklist,
    2: PlatformReviewedChecklist,
    3: OfficialVerifiedChecklist,
}


def empty_checklist(level: int) -> DocsUploadedChecklist:
    """Unchecked checklist for a verification level (1, 2 or 3)."""
    return _BY_LEVEL[level]()


def parse_checklist(data: dict | None) -> DocsUploadedChecklist | None:
    if data is None:
        return None
    return checklist_adapter.validate_python(data)
