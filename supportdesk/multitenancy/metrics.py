"""Kernel counters for isolation events.

Plain integer counters incremented on the event loop; exact consistency
is not required. Exposed by the master API and the CLI.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class KernelMetrics:
    """Counters for isolation-relevant events.

    Attributes:
        legacy_token_acceptances: Version-1 tokens accepted under grace.
        bypass_entries: Times scope bypass was entered.
        cross_tenant_denials: ``CrossTenantDenied`` raised anywhere.
        dropped_realtime_frames: Outbound frames dropped on overflow.
        tenant_fields_stripped: Updates that tried to modify ``tenant_id``.
        resolutions: Successful resolutions by source.
    """

    legacy_token_acceptances: int = 0
    bypass_entries: int = 0
    cross_tenant_denials: int = 0
    dropped_realtime_frames: int = 0
    tenant_fields_stripped: int = 0
    resolutions: dict[str, int] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record_resolution(self, source: str) -> None:
        self.resolutions[source] = self.resolutions.get(source, 0) + 1

    def reset(self) -> None:
        fresh = KernelMetrics()
        for name, value in asdict(fresh).items():
            setattr(self, name, value)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data
