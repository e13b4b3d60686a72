"""
Statutory and recovery deductions for one staff member.

Deductions are applied in a fixed priority order against the contractual
gross. When they cannot all be covered the remainder is not dropped:
statutory shortfalls become ``deferred`` and stay on the staff member's
outstanding balance until a later cycle collects them, and an advance
installment that could not be taken stays on the advance ledger balance.
Either case flags the entry; net pay never goes below zero.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from ..core.money import prorate, to_minor
from ..integrations.contracts import AdvanceLedger, StaffTaxProfile
from ..tax.rules import TaxRuleSet
from .earnings import EarningsSnapshot

# Order in which deductions claim the available gross
PRIORITY = ("lwp_deduction", "income_tax", "provident_fund", "insurance",
            "professional_tax", "carried_forward", "advance_recovery")

@dataclass(frozen=True)
class DeductionBreakdown:
    gross_earnings: int
    taxable_gross: int
    income_tax: int = 0
    provident_fund: int = 0
    insurance: int = 0
    professional_tax: int = 0
    advance_recovery: int = 0
    lwp_deduction: int = 0
    carried_forward: int = 0
    deferred: int = 0
    advance_shortfall: int = 0
    requested: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return (self.income_tax + self.provident_fund + self.insurance + self.professional_tax
                + self.advance_recovery + self.lwp_deduction + self.carried_forward)

    @property
    def net_pay(self) -> int:
        return self.gross_earnings - self.total

    @property
    def carried_in(self) -> int:
        """Deferred balance brought into this computation, whether or not it was all collected."""
        return self.requested.get("carried_forward", 0)

    @property
    def flagged(self) -> bool:
        return self.deferred > 0 or self.advance_shortfall > 0

    def as_dict(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in PRIORITY}

class DeductionCalculator:
    def __init__(self, rule_set: TaxRuleSet, advances: Optional[AdvanceLedger] = None):
        self.rule_set = rule_set
        self.advances = advances

    def monthly_income_tax(self, taxable_gross: int, tax_profile: StaffTaxProfile) -> int:
        """Annualise, subtract declared exemptions, run the slabs, divide back by 12."""
        if tax_profile.tds_exempt or taxable_gross <= 0:
            return 0
        annual = max(taxable_gross * 12 - tax_profile.annual_exemptions, 0)
        return to_minor(self.rule_set.marginal_tax(annual) / Decimal(12))

    def _advance_installment(self, staff_id: str, reserved: int = 0) -> int:
        """Installment capped by what is left of the advance once unpaid cycles' recoveries are counted."""
        if self.advances is None:
            return 0
        available = self.advances.get_outstanding_advance(staff_id) - max(int(reserved), 0)
        if available <= 0:
            return 0
        return min(self.advances.get_installment(staff_id), available)

    def compute_deductions(self, earnings: EarningsSnapshot, tax_profile: StaffTaxProfile,
                           carried_forward: int = 0, advance_reserved: int = 0) -> DeductionBreakdown:
        gross = earnings.gross_before_lwp
        lwp = 0
        if earnings.compensation_model.is_salaried and earnings.unpaid_leave_days:
            lwp = prorate(earnings.contractual_base, earnings.unpaid_leave_days, earnings.working_days)
        taxable = gross - lwp

        requested = {
            "lwp_deduction": lwp,
            "income_tax": self.monthly_income_tax(taxable, tax_profile),
            "provident_fund": self.rule_set.provident_fund(taxable) if tax_profile.pf_enrolled else 0,
            "insurance": self.rule_set.insurance(taxable) if tax_profile.insurance_eligible else 0,
            "professional_tax": (self.rule_set.professional_tax(taxable)
                                 if tax_profile.professional_tax_applicable else 0),
            "carried_forward": max(int(carried_forward), 0),
            "advance_recovery": self._advance_installment(earnings.staff_id, advance_reserved),
        }

        remaining = gross
        applied = {}
        for name in PRIORITY:
            take = min(requested[name], max(remaining, 0))
            applied[name] = take
            remaining -= take

        advance_shortfall = requested["advance_recovery"] - applied["advance_recovery"]
        deferred = sum(requested[n] - applied[n] for n in PRIORITY if n != "advance_recovery")

        return DeductionBreakdown(
            gross_earnings=gross,
            taxable_gross=taxable,
            deferred=deferred,
            advance_shortfall=advance_shortfall,
            requested=requested,
            **applied,
        )
