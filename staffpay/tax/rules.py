from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from staffpay.core.config import Settings
from staffpay.core.exceptions import ConfigError
from staffpay.core.money import apply_rate

@dataclass(frozen=True)
class TaxSlab:
    """Half-open bracket [min_amount, max_amount) in annual paisa; max_amount None is open-ended."""
    min_amount: int
    max_amount: Optional[int]
    rate: Decimal

    def covered(self, income: int) -> int:
        if income <= self.min_amount:
            return 0
        upper = income if self.max_amount is None else min(income, self.max_amount)
        return upper - self.min_amount

SlabLike = Union[TaxSlab, Tuple[int, Optional[int], Union[Decimal, str, float]]]

class TaxRuleSet:
    """
    Progressive income tax slabs plus the flat statutory contributions.
    Slabs are validated on construction: they must start at 0, be
    contiguous, never overlap, and end with an open upper bound.
    """

    def __init__(
        self,
        slabs: Iterable[SlabLike],
        *,
        pf_rate: Decimal = Decimal("0"),
        pf_wage_ceiling: Optional[int] = None,
        insurance_rate: Decimal = Decimal("0"),
        insurance_threshold: Optional[int] = None,
        professional_tax_monthly: int = 0,
        professional_tax_floor: int = 0,
        name: str = "default",
    ):
        self.name = name
        self.slabs: Tuple[TaxSlab, ...] = tuple(self._coerce(s) for s in slabs)
        self.pf_rate = Decimal(pf_rate)
        self.pf_wage_ceiling = pf_wage_ceiling
        self.insurance_rate = Decimal(insurance_rate)
        self.insurance_threshold = insurance_threshold
        self.professional_tax_monthly = professional_tax_monthly
        self.professional_tax_floor = professional_tax_floor
        self.validate()

    @classmethod
    def from_settings(cls, config: Settings, name: str = "default") -> "TaxRuleSet":
        return cls(
            config.TDS_SLABS,
            pf_rate=config.PF_RATE,
            pf_wage_ceiling=config.PF_WAGE_CEILING,
            insurance_rate=config.INSURANCE_RATE,
            insurance_threshold=config.INSURANCE_THRESHOLD,
            professional_tax_monthly=config.PROFESSIONAL_TAX_MONTHLY,
            professional_tax_floor=config.PROFESSIONAL_TAX_FLOOR,
            name=name,
        )

    @staticmethod
    def _coerce(slab: SlabLike) -> TaxSlab:
        if isinstance(slab, TaxSlab):
            return slab
        try:
            lo, hi, rate = slab
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Slab must be (min, max, rate), got {slab!r}") from exc
        return TaxSlab(int(lo), None if hi is None else int(hi), Decimal(str(rate)))

    def validate(self):
        if not self.slabs:
            raise ConfigError("Tax rule set has no slabs")
        if self.slabs[0].min_amount != 0:
            raise ConfigError(f"First slab must start at 0, starts at {self.slabs[0].min_amount}", 0)
        for i, slab in enumerate(self.slabs):
            if slab.rate < 0 or slab.rate > 1:
                raise ConfigError(f"Slab {i} has invalid rate {slab.rate}", i)
            if slab.max_amount is not None and slab.max_amount <= slab.min_amount:
                raise ConfigError(f"Slab {i} is empty or inverted", i)
            if i == len(self.slabs) - 1:
                if slab.max_amount is not None:
                    raise ConfigError("Last slab must have an open upper bound", i)
                break
            if slab.max_amount is None:
                raise ConfigError(f"Only the last slab may be open-ended (slab {i})", i)
            nxt = self.slabs[i + 1]
            if nxt.min_amount < slab.max_amount:
                raise ConfigError(f"Slabs {i} and {i + 1} overlap", i + 1)
            if nxt.min_amount > slab.max_amount:
                raise ConfigError(f"Gap between slab {i} and {i + 1}", i + 1)
        for name, rate in (("pf_rate", self.pf_rate), ("insurance_rate", self.insurance_rate)):
            if rate < 0 or rate > 1:
                raise ConfigError(f"{name} must be between 0 and 1, got {rate}")

    def marginal_tax(self, annual_income: int) -> Decimal:
        """Exact (unrounded) annual tax in paisa for an annualized income."""
        tax = Decimal("0")
        if annual_income <= 0:
            return tax
        for slab in self.slabs:
            tax += Decimal(slab.covered(annual_income)) * slab.rate
            if slab.max_amount is None or annual_income < slab.max_amount:
                break
        return tax

    def provident_fund(self, gross: int) -> int:
        base = gross if self.pf_wage_ceiling is None else min(gross, self.pf_wage_ceiling)
        return apply_rate(max(base, 0), self.pf_rate)

    def insurance(self, gross: int) -> int:
        # Hard cutoff: above the threshold the staff member is exempt entirely
        if gross <= 0:
            return 0
        if self.insurance_threshold is not None and gross > self.insurance_threshold:
            return 0
        return apply_rate(gross, self.insurance_rate)

    def professional_tax(self, gross: int) -> int:
        if gross <= 0 or gross < self.professional_tax_floor:
            return 0
        return self.professional_tax_monthly

    def slab_table(self) -> List[Dict[str, object]]:
        return [
            {"min": s.min_amount, "max": s.max_amount, "rate": str(s.rate)}
            for s in self.slabs
        ]

def rule_set_from_rows(rows: Sequence[Dict[str, object]], **kwargs) -> TaxRuleSet:
    """Build a rule set from config rows like {'min': 0, 'max': 25000000, 'rate': '0.05'}."""
    slabs = []
    for row in sorted(rows, key=lambda r: int(r.get("min", 0))):
        slabs.append((row.get("min", 0), row.get("max"), row.get("rate", "0")))
    return TaxRuleSet(slabs, **kwargs)
