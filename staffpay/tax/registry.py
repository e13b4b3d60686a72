"""
Tax rule set versioning by effective date.
"""
from datetime import date
from typing import Dict, List, Any, Optional, Sequence

from staffpay.core.exceptions import ConfigError
from staffpay.tax.rules import TaxRuleSet, rule_set_from_rows

class TaxRuleRegistry:
    """Holds rule set versions and resolves the one in force for a period."""

    def __init__(self, default: Optional[TaxRuleSet] = None):
        self._versions: Dict[date, TaxRuleSet] = {}
        if default is not None:
            self.register(date.min, default)

    def register(self, effective_from: date, rule_set: TaxRuleSet) -> Dict[str, Any]:
        """Add or replace the version effective from a date."""
        replaced = effective_from in self._versions
        rule_set.validate()
        self._versions[effective_from] = rule_set
        return {"effective_from": effective_from.isoformat(), "replaced": replaced,
                "version": sorted(self._versions).index(effective_from) + 1}

    def register_rows(self, effective_from: date, rows: Sequence[Dict[str, Any]], **kwargs) -> Dict[str, Any]:
        return self.register(effective_from, rule_set_from_rows(rows, **kwargs))

    def for_date(self, on: date) -> TaxRuleSet:
        valid = [d for d in self._versions if d <= on]
        if not valid:
            raise ConfigError(f"No tax rule set effective on {on.isoformat()}")
        return self._versions[max(valid)]

    def versions(self) -> List[Dict[str, Any]]:
        return [
            {"effective_from": d.isoformat(), "name": self._versions[d].name, "slabs": self._versions[d].slab_table()}
            for d in sorted(self._versions)
        ]
