"""
Audit trail for payroll cycles, payroll entries and exit settlements.
Every state transition and every computed amount set is appended to a
per-tenant JSONL change log.
"""
import json
from pathlib import Path
from typing import Dict, List, Any, Optional, Union
from datetime import datetime

class AuditLogger:
    """Append-only change log for engine entities."""

    def __init__(self, tenant_id: str, audit_dir: Union[str, Path]):
        self.tenant_id = tenant_id
        self.audit_dir = Path(audit_dir) / "audit"
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        self.changes_log = self.audit_dir / f"{tenant_id}_changes.jsonl"

    def log_data_change(
        self,
        entity_type: str,
        operation: str,  # 'create', 'transition', 'compute', 'settle'
        entity_id: str,
        changes: Dict[str, Any],
        user_id: Optional[str] = None
    ):
        """Log an individual data change."""

        log_entry = {
            'timestamp': datetime.now().isoformat(),
            'tenant_id': self.tenant_id,
            'entity_type': entity_type,
            'operation': operation,
            'entity_id': entity_id,
            'changes': changes,
            'user_id': user_id
        }

        with open(self.changes_log, 'a', encoding='utf-8') as f:
            f.write(json.dumps(log_entry, default=str) + '\n')

    def log_transition(self, entity_type: str, entity_id: str, from_state: str, to_state: str,
                       user_id: Optional[str] = None, **extra: Any):
        changes = {'from': from_state, 'to': to_state}
        changes.update(extra)
        self.log_data_change(entity_type, 'transition', entity_id, changes, user_id=user_id)

    def get_change_history(self, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
        """Get change history for a specific entity, oldest first."""
        if not self.changes_log.exists():
            return []

        changes = []
        with open(self.changes_log, 'r', encoding='utf-8') as f:
            for line in f:
                try:
                    entry = json.loads(line.strip())
                except json.JSONDecodeError:
                    continue
                if (entry.get('entity_type') == entity_type and
                    entry.get('entity_id') == entity_id):
                    changes.append(entry)

        return changes

    def get_transition_path(self, entity_type: str, entity_id: str) -> List[str]:
        """States an entity has passed through, in order."""
        path = []
        for entry in self.get_change_history(entity_type, entity_id):
            if entry.get('operation') != 'transition':
                continue
            if not path:
                path.append(entry['changes']['from'])
            path.append(entry['changes']['to'])
        return path
