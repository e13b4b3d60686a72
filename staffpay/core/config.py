from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STAFFPAY_")

    APP_NAME: str = Field("StaffPay", description="Logger namespace")
    DB_URL: str = Field("sqlite:///./data/staffpay.db", description="Database URL")
    LOG_LEVEL: str = "INFO"
    AUDIT_LOG_PATH: str = Field("./data/logs", description="Directory for rotating logs and audit trails")

    # One day-count convention for payroll LWP and settlement daily rate
    STANDARD_DAYS_PER_MONTH: int = 30
    STANDARD_HOURS_PER_DAY: int = 8
    OVERTIME_MULTIPLIER: Decimal = Decimal("1.50")

    # TDS (India, new regime style) - annual, paisa: (min, max or None, rate)
    TDS_SLABS: List[Tuple[int, Optional[int], Decimal]] = [
        (0, 25_000_000, Decimal("0")),
        (25_000_000, 50_000_000, Decimal("0.05")),
        (50_000_000, 100_000_000, Decimal("0.20")),
        (100_000_000, None, Decimal("0.30")),
    ]

    # Provident fund: 12% of gross, wage ceiling 15,000
    PF_RATE: Decimal = Decimal("0.12")
    PF_WAGE_CEILING: int = 1_500_000

    # ESI: 0.75% of gross, only staff at or below 21,000 gross are enrolled
    INSURANCE_RATE: Decimal = Decimal("0.0075")
    INSURANCE_THRESHOLD: int = 2_100_000

    # Professional tax: flat monthly amount above a gross floor
    PROFESSIONAL_TAX_MONTHLY: int = 20_000
    PROFESSIONAL_TAX_FLOOR: int = 0

    GRATUITY_ELIGIBILITY_YEARS: int = 5
    GRATUITY_DAYS_PER_YEAR: int = 15

    MAX_WORKERS: int = 4
    # A cycle left in processing longer than this is treated as abandoned and reset to draft
    PROCESSING_TIMEOUT_SECONDS: int = 900

settings = Settings()
