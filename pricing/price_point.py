from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation


@dataclass(frozen=True)
class PricePoint:
    """Energy price for the hour starting at ``starts_at``.

    ``starts_at`` always carries a UTC offset so that points from different
    sources (and from the schedule file) compare unambiguously.
    """

    total: Decimal          # total price per kWh, taxes included
    starts_at: datetime     # start of the hour, offset-aware

    def __post_init__(self):
        if self.starts_at.tzinfo is None or self.starts_at.utcoffset() is None:
            raise ValueError(f"starts_at must carry a UTC offset: {self.starts_at!r}")
        if not isinstance(self.total, Decimal):
            object.__setattr__(self, "total", to_decimal(self.total))

    def to_dict(self) -> dict:
        """Lossless form used by the schedule file."""
        return {"total": str(self.total), "startsAt": self.starts_at.isoformat()}

    @classmethod
    def from_dict(cls, data: dict) -> "PricePoint":
        """Inverse of ``to_dict``; also accepts a numeric ``total``."""
        return cls(
            total=to_decimal(data["total"]),
            starts_at=datetime.fromisoformat(data["startsAt"]),
        )

    def __str__(self) -> str:
        return f"Total: {self.total}, Starts At: {self.starts_at.isoformat()}"


def to_decimal(value) -> Decimal:
    """Convert a JSON total (string, int, float or Decimal) to Decimal.

    Floats go through ``str`` so that 0.1 stays 0.1 instead of its binary
    expansion.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid price total: {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid price total: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Invalid price total: {value!r}")
    return result
