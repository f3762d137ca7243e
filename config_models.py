from dataclasses import dataclass, field


@dataclass
class AppConfig:
    name: str
    base_currency: str


@dataclass
class RenewalConfig:
    enabled: bool
    schedule: str
    timezone: str
    event_log_path: str
    billing_periods: list[str] = field(
        default_factory=lambda: ["DAILY", "WEEKLY", "MONTHLY", "YEARLY"]
    )
