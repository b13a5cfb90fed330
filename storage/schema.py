"""storage/schema.py

DuckDB schema of the sync cache.

Every entity table stores the full entity as a JSON payload plus a few
projected columns used for filtering, and the ordering-guard position.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Tuple

from lifecycle.models import EntityKind

_RECORD_COLUMNS = """
    payload VARCHAR NOT NULL,
    last_applied_block BIGINT NOT NULL,
    last_applied_log_index BIGINT NOT NULL,
    synced_at DOUBLE NOT NULL
"""

# (column, type) projections per entity table
PROJECTIONS: Dict[EntityKind, List[Tuple[str, str]]] = {
    EntityKind.JOB: [
        ("job_id", "BIGINT"),
        ("status", "INTEGER"),
        ("client_address", "VARCHAR"),
        ("escrow_address", "VARCHAR"),
    ],
    EntityKind.ESCROW: [
        ("job_id", "BIGINT"),
        ("freelancer_address", "VARCHAR"),
        ("terminal", "BOOLEAN"),
    ],
    EntityKind.PROPOSAL: [
        ("job_id", "BIGINT"),
        ("freelancer_address", "VARCHAR"),
    ],
    EntityKind.DIRECT_OFFER: [
        ("job_id", "BIGINT"),
        ("decided", "BOOLEAN"),
    ],
    EntityKind.PROFILE: [
        ("wallet_address", "VARCHAR"),
        ("is_active", "BOOLEAN"),
    ],
    EntityKind.DISPUTE: [
        ("job_id", "BIGINT"),
        ("disputer_address", "VARCHAR"),
        ("dispute_reason_uri", "VARCHAR"),
        ("transaction_hash", "VARCHAR"),
        ("status", "VARCHAR"),
        ("created_at", "BIGINT"),
    ],
}

_PROJECTORS: Dict[EntityKind, Callable[[Any], Tuple]] = {
    EntityKind.JOB: lambda e: (e.job_id, int(e.status), e.client, e.escrow_address),
    EntityKind.ESCROW: lambda e: (e.job_id, e.freelancer, e.terminal),
    EntityKind.PROPOSAL: lambda e: (e.job_id, e.freelancer),
    EntityKind.DIRECT_OFFER: lambda e: (e.job_id, e.decision is not None),
    EntityKind.PROFILE: lambda e: (e.wallet, e.is_active),
    EntityKind.DISPUTE: lambda e: (
        e.job_id, e.disputer_address, e.dispute_reason_uri,
        e.transaction_hash, e.status.value, e.created_at,
    ),
}


def project(kind: EntityKind, entity: Any) -> Tuple:
    return _PROJECTORS[kind](entity)


def entity_table_ddl(kind: EntityKind) -> str:
    cols = ",\n".join(f"    {name} {type_}" for name, type_ in PROJECTIONS[kind])
    return (
        f"CREATE TABLE IF NOT EXISTS {kind.value} (\n"
        f"    entity_id VARCHAR PRIMARY KEY,\n{cols},{_RECORD_COLUMNS})"
    )


SYNC_STATUS_DDL = """
CREATE TABLE IF NOT EXISTS sync_status (
    contract_name VARCHAR PRIMARY KEY,
    last_synced_block BIGINT NOT NULL DEFAULT 0,
    last_synced_at DOUBLE,
    sync_errors INTEGER NOT NULL DEFAULT 0,
    last_error VARCHAR,
    lease_owner VARCHAR,
    lease_expires_at DOUBLE
)
"""

APPLIED_KEYS_DDL = """
CREATE TABLE IF NOT EXISTS applied_keys (
    idempotency_key VARCHAR PRIMARY KEY,
    kind VARCHAR NOT NULL,
    entity_id VARCHAR NOT NULL,
    applied_at DOUBLE NOT NULL
)
"""


def all_ddl() -> List[str]:
    return [entity_table_ddl(k) for k in EntityKind] + [SYNC_STATUS_DDL, APPLIED_KEYS_DDL]
