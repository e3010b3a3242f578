"""Pydantic schemas for FAR rules."""
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    EXPRESSLY_UNALLOWABLE = "EXPRESSLY_UNALLOWABLE"
    LIMITED_ALLOWABLE = "LIMITED_ALLOWABLE"


class FarRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    section: str = Field(min_length=1)  # e.g. "31.205-51"
    title: str
    severity: Severity
    keywords: tuple[str, ...] = ()
    description: str = ""

    @field_validator("section", "title")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()

    @field_validator("keywords")
    @classmethod
    def normalize_keywords(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        # A blank keyword would match every description.
        return tuple(k.strip().lower() for k in v if k and k.strip())

    @property
    def issue_label(self) -> str:
        return f"{self.title} ({self.section})"


class RulesOut(BaseModel):
    rules: list[FarRule]
    count: int
    load_errors: list[str]
