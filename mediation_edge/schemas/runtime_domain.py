"""Runtime domain request schemas."""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# Fields stay untyped: the verifier turns malformed values into a structured
# rejection, so a wrong JSON type must never become a 422.
class VerifyAndBindRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    domain: Optional[Any] = None
    placement_id: Optional[Any] = Field(default=None, alias="placementId")
    probe_headers: Optional[Any] = Field(default=None, alias="probeHeaders")


class RuntimeProbeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    domain: Optional[Any] = None
    placement_id: Optional[Any] = Field(default=None, alias="placementId")
    probe_headers: Optional[Any] = Field(default=None, alias="probeHeaders")
    run_browser_probe: Optional[Any] = Field(default=None, alias="runBrowserProbe")
    browser_probe: Optional[Any] = Field(default=None, alias="browserProbe")
