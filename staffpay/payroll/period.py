import calendar
from dataclasses import dataclass
from datetime import date

@dataclass(frozen=True)
class PayPeriod:
    year: int
    month: int
    start: date
    end: date
    working_days: int

    @classmethod
    def for_month(cls, year: int, month: int, working_days: int) -> "PayPeriod":
        if not 1 <= month <= 12:
            raise ValueError(f"month must be 1-12, got {month}")
        if not 2020 <= year <= 2100:
            raise ValueError(f"year must be 2020-2100, got {year}")
        last_day = calendar.monthrange(year, month)[1]
        return cls(year, month, date(year, month, 1), date(year, month, last_day), working_days)

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"
