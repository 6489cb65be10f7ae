"""
Audit Log - Tamper-Evident Issuance Records

Provides hash-chained audit entries for identity operations (authority
creation, server identity, peer issuance and revocation).
Each entry includes prev_hash + entry_hash for integrity verification.
Entries are stored as JSON lines next to the PKI.
"""

import hashlib
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    AUTHORITY_CREATED = "authority_created"
    SERVER_IDENTITY_CREATED = "server_identity_created"
    PEER_ISSUED = "peer_issued"
    PEER_ISSUE_RECOVERED = "peer_issue_recovered"
    PEER_REVOKED = "peer_revoked"


@dataclass
class AuditEntry:
    sequence_number: int
    timestamp: str
    action: str
    payload: Dict[str, Any]
    payload_hash: str
    prev_hash: str
    entry_hash: str


class AuditLog:
    """
    Append-only, hash-chained audit log.

    Features:
    - Hash-chained entries (prev_hash + entry_hash)
    - Monotonic sequence numbers
    - Payload hashing for integrity
    """

    GENESIS_HASH = "0" * 64

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def log(self, action: AuditAction, payload: Optional[Dict[str, Any]] = None) -> AuditEntry:
        """
        Append a new audit entry.

        Automatically:
        - Assigns next sequence number
        - Computes payload hash
        - Links to previous entry via prev_hash
        """
        entries = self.entries()
        if entries:
            prev_hash = entries[-1].entry_hash
            sequence_number = entries[-1].sequence_number + 1
        else:
            prev_hash = self.GENESIS_HASH
            sequence_number = 1

        payload = payload or {}
        payload_hash = self._hash_payload(payload)
        timestamp = datetime.now(timezone.utc).isoformat()
        entry = AuditEntry(
            sequence_number=sequence_number,
            timestamp=timestamp,
            action=action.value,
            payload=payload,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            entry_hash=self._compute_entry_hash(prev_hash, action.value, payload_hash, timestamp),
        )

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(asdict(entry), sort_keys=True) + "\n")
            f.flush()

        logger.info(f"Audit: {action.value} {payload}")
        return entry

    def entries(self, action: Optional[AuditAction] = None) -> List[AuditEntry]:
        """Read entries in sequence order, optionally filtered by action."""
        if not self.path.exists():
            return []
        result = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = AuditEntry(**json.loads(line))
                if action is None or entry.action == action.value:
                    result.append(entry)
        return result

    def has_entry(self, action: AuditAction, **match: Any) -> bool:
        """True if an entry with this action has a payload containing all match items."""
        return any(
            all(e.payload.get(k) == v for k, v in match.items())
            for e in self.entries(action)
        )

    def verify_chain(self) -> Dict[str, Any]:
        """
        Verify the integrity of the audit chain.

        Returns:
            Dict with verification results:
            - is_valid: bool
            - total_entries: int
            - first_invalid_sequence: Optional[int]
            - error_message: Optional[str]
        """
        entries = self.entries()
        expected_prev_hash = self.GENESIS_HASH

        for i, entry in enumerate(entries):
            error = None
            if entry.sequence_number != i + 1:
                error = f"Sequence gap: expected {i + 1}, got {entry.sequence_number}"
            elif entry.prev_hash != expected_prev_hash:
                error = f"Hash chain broken at sequence {entry.sequence_number}"
            elif entry.payload_hash != self._hash_payload(entry.payload):
                error = f"Payload hash mismatch at sequence {entry.sequence_number}"
            elif entry.entry_hash != self._compute_entry_hash(
                entry.prev_hash, entry.action, entry.payload_hash, entry.timestamp
            ):
                error = f"Entry hash mismatch at sequence {entry.sequence_number}"

            if error:
                return {
                    "is_valid": False,
                    "total_entries": len(entries),
                    "first_invalid_sequence": entry.sequence_number,
                    "error_message": error,
                }
            expected_prev_hash = entry.entry_hash

        return {
            "is_valid": True,
            "total_entries": len(entries),
            "first_invalid_sequence": None,
            "error_message": None,
        }

    @staticmethod
    def _hash_payload(payload: Dict[str, Any]) -> str:
        payload_json = json.dumps(payload, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(payload_json.encode()).hexdigest()

    @staticmethod
    def _compute_entry_hash(prev_hash: str, action: str, payload_hash: str, timestamp: str) -> str:
        """Compute the tamper-evident hash for an entry."""
        data = f"{prev_hash}:{action}:{payload_hash}:{timestamp}"
        return hashlib.sha256(data.encode()).hexdigest()
