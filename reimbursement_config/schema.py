"""
Configuration schema (``reimbursement_config.schema``).

Frozen dataclass describing every runtime setting.  Instances are produced
only by ``reimbursement_config.loader``; nothing else constructs them from
raw files or environment variables.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the reimbursement workflow."""

    database_url: str = "sqlite+pysqlite:///:memory:"
    echo_sql: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    required_approver_count: int = 2
    amount_decimal_places: int = 0
    default_currency: str = "AFN"
    notification_link_template: str = "/personal/{request_id}"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database_url must not be empty")
        if self.required_approver_count < 1:
            raise ValueError(
                f"required_approver_count must be >= 1, got {self.required_approver_count}"
            )
        if not 0 <= self.amount_decimal_places <= 9:
            raise ValueError(
                f"amount_decimal_places must be between 0 and 9, got {self.amount_decimal_places}"
            )
        if len(self.default_currency) != 3 or not self.default_currency.isalpha():
            raise ValueError(
                f"default_currency must be a 3-letter code, got {self.default_currency!r}"
            )
        if "{request_id}" not in self.notification_link_template:
            raise ValueError("notification_link_template must contain '{request_id}'")
        if self.pool_size < 1 or self.max_overflow < 0:
            raise ValueError("pool_size must be >= 1 and max_overflow >= 0")

    def notification_link(self, request_id) -> str:
        return self.notification_link_template.format(request_id=request_id)

    @property
    def safe_database_url(self) -> str:
        """Database URL with any password masked, for logging."""
        scheme, sep, rest = self.database_url.partition("://")
        if not sep or "@" not in rest:
            return self.database_url
        credentials, _, host = rest.rpartition("@")
        user = credentials.split(":", 1)[0]
        return f"{scheme}://{user}:***@{host}"
