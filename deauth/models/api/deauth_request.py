# deauth/models/api/deauth_request.py
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from deauth.models.domain.job_configuration import LookBackMode


class DeauthorizeInactiveUsersRequest(BaseModel):
    """Request body for an on-demand deauthorization run. Unset fields fall back to settings."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    look_back_mode: LookBackMode | None = Field(default=None, alias="lookBackMode")
    look_back_amount: PositiveInt | None = Field(default=None, alias="lookBackAmount")
    dry_run: bool = Field(default=False, alias="dryRun")
    batch_size: PositiveInt | None = Field(default=None, alias="batchSize")
    worker_threads: PositiveInt | None = Field(default=None, alias="workerThreads")

    @field_validator("look_back_mode", mode="before")
    @classmethod
    def normalize_look_back_mode(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    def to_job_parameters(self) -> dict[str, Any]:
        """Named parameters understood by resolve_job_configuration."""
        params: dict[str, Any] = {"dryRun": self.dry_run}
        if self.look_back_mode is not None:
            params["lookBackMode"] = self.look_back_mode.value
        if self.look_back_amount is not None:
            params["lookBackAmount"] = self.look_back_amount
        if self.batch_size is not None:
            params["batchSize"] = self.batch_size
        if self.worker_threads is not None:
            params["workerThreads"] = self.worker_threads
        return params
