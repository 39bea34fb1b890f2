from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

BIND_STATUS_UNBOUND = "unbound"
BIND_STATUS_PENDING = "pending"
BIND_STATUS_VERIFIED = "verified"
BIND_STATUS_FAILED = "failed"

BIND_STATUSES = (
    BIND_STATUS_UNBOUND,
    BIND_STATUS_PENDING,
    BIND_STATUS_VERIFIED,
    BIND_STATUS_FAILED,
)

# snake_case attribute → camelCase wire name
_WIRE_NAMES = {
    "key_hash": "keyHash",
    "tenant_id": "tenantId",
    "runtime_base_url": "runtimeBaseUrl",
    "placement_id": "placementId",
    "bind_status": "bindStatus",
    "verified_at": "verifiedAt",
    "last_probe_at": "lastProbeAt",
    "last_probe_code": "lastProbeCode",
    "last_probe_http_status": "lastProbeHttpStatus",
    "probe_headers_encrypted": "probeHeadersEncrypted",
    "probe_diagnostics": "probeDiagnostics",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class RuntimeBinding:
    """
    Binding between one API key and a customer runtime origin.

    Instances are immutable snapshots: every state change produces a new,
    internally consistent object via ``evolve`` and replaces the stored one.
    """

    key_hash: str
    tenant_id: str
    runtime_base_url: str = ""
    placement_id: str = ""
    bind_status: str = BIND_STATUS_PENDING
    verified_at: str = ""
    last_probe_at: str = ""
    last_probe_code: str = ""
    last_probe_http_status: Optional[int] = None
    probe_headers_encrypted: str = ""
    probe_diagnostics: List[Dict[str, Any]] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        if not self.key_hash:
            raise ValueError("RuntimeBinding requires a key_hash")
        if self.bind_status not in BIND_STATUSES:
            raise ValueError(f"unknown bind_status {self.bind_status!r}")
        if self.bind_status == BIND_STATUS_VERIFIED and not (self.runtime_base_url and self.verified_at):
            raise ValueError("a verified binding needs runtime_base_url and verified_at")
        if self.bind_status != BIND_STATUS_VERIFIED and self.verified_at:
            object.__setattr__(self, "verified_at", "")

    @property
    def is_verified(self) -> bool:
        return self.bind_status == BIND_STATUS_VERIFIED and bool(self.runtime_base_url)

    def evolve(self, **changes) -> "RuntimeBinding":
        """Copy with ``changes`` applied and ``updated_at`` bumped; ``key_hash`` never changes."""
        changes.pop("key_hash", None)
        changes.setdefault("updated_at", utc_now_iso())
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {_WIRE_NAMES[k]: v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuntimeBinding":
        """Build from camelCase (or snake_case) JSON; unknown keys are ignored."""
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            wire = _WIRE_NAMES[f.name]
            if wire in data and data[wire] is not None:
                kwargs[f.name] = data[wire]
            elif f.name in data and data[f.name] is not None:
                kwargs[f.name] = data[f.name]
        status = kwargs.get("last_probe_http_status")
        if status is not None and not isinstance(status, int):
            kwargs["last_probe_http_status"] = int(status) if str(status).isdigit() else None
        if not isinstance(kwargs.get("probe_diagnostics", []), list):
            kwargs["probe_diagnostics"] = []
        return cls(**kwargs)
