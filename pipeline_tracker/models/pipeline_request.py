"""
Pipeline Request Models
=======================
Payloads accepted by the HTTP layer.

PipelineRequest     — submission of a new execution (POST /api/pipeline/trigger)
StatusUpdate        — manual status / stage edit
SubStatusUpdate     — build or deployment sub-status
SuiteResultsUpdate  — test counts plus optional per-case results
"""
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from pipeline_tracker.core.constants import DEFAULT_BRANCH
from pipeline_tracker.models.execution import ExecutionStatus, check_test_counts
from pipeline_tracker.models.test_result import ExecutionTestCase


class PipelineRequest(BaseModel):
    student_name: str
    repository_url: str
    branch_name: Optional[str] = None
    commit_hash: Optional[str] = None

    @field_validator("student_name", "repository_url")
    @classmethod
    def require_text(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("branch_name", "commit_hash")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @property
    def branch(self) -> str:
        return self.branch_name or DEFAULT_BRANCH


class StatusUpdate(BaseModel):
    status: ExecutionStatus
    stage: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, v):
        return ExecutionStatus(v)


class SubStatusUpdate(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def normalize(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip().upper()


class SuiteResultsUpdate(BaseModel):
    test_status: str
    total: int = Field(ge=0)
    passed: int = Field(ge=0)
    failed: int = Field(ge=0)
    cases: List[ExecutionTestCase] = []

    @model_validator(mode="after")
    def _check_counts(self) -> "SuiteResultsUpdate":
        check_test_counts(self.total, self.passed, self.failed)
        return self
