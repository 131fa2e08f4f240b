from __future__ import annotations

import json
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from campaign_task import (
    EXTERNAL_ID_FIELDS,
    BusinessProfile,
    CampaignTask,
    ConversionMethod,
    CreativeSlot,
    CreativeVariant,
    ExternalIds,
    NON_TERMINAL_STATES,
    Strategy,
    TaskState,
)

TASK_COLUMNS = (
    "id, user_id, state, conversion_method, business_profile_json, strategy_json, "
    "campaign_id, adset_id, creative_id, ad_id, lead_form_id, last_error, created_at, updated_at, completed_at"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _parse_dt(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        dt = v
    else:
        dt = datetime.fromisoformat(str(v).strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _load_json(v: Any) -> Optional[dict]:
    if v is None or v == "":
        return None
    if isinstance(v, dict):
        return v
    return json.loads(v)


def dump_json(model: Any) -> Optional[str]:
    if model is None:
        return None
    return json.dumps(model.model_dump(mode="json"), ensure_ascii=False, sort_keys=True)


def row_to_task(row: Sequence[Any], creatives: List[CreativeVariant]) -> CampaignTask:
    """Build a CampaignTask from a row selected with TASK_COLUMNS (shared by both backends)."""
    (
        task_id, user_id, state, conversion_method, profile_json, strategy_json,
        campaign_id, adset_id, creative_id, ad_id, lead_form_id,
        last_error, created_at, updated_at, completed_at,
    ) = row
    profile = _load_json(profile_json)
    strategy = _load_json(strategy_json)
    return CampaignTask(
        id=str(task_id),
        user_id=str(user_id),
        state=TaskState(state),
        conversion_method=ConversionMethod(conversion_method) if conversion_method else None,
        business_profile=BusinessProfile.model_validate(profile) if profile else None,
        strategy=Strategy.model_validate(strategy) if strategy else None,
        creatives=creatives,
        external_ids=ExternalIds(
            campaign_id=campaign_id,
            adset_id=adset_id,
            creative_id=creative_id,
            ad_id=ad_id,
            lead_form_id=lead_form_id,
        ),
        last_error=last_error,
        created_at=_parse_dt(created_at) or utcnow(),
        updated_at=_parse_dt(updated_at) or utcnow(),
        completed_at=_parse_dt(completed_at),
    )


def build_variants(variants: Mapping[CreativeSlot, Sequence[str]]) -> List[CreativeVariant]:
    """Fresh variant rows; the first variant of each slot starts selected."""
    out: List[CreativeVariant] = []
    for slot in CreativeSlot:
        for i, content in enumerate(variants.get(slot) or []):
            out.append(CreativeVariant(id=new_id(), slot=slot, position=i, content=content, selected=(i == 0)))
    return out


def _state_values(states: Iterable[TaskState]) -> List[str]:
    return [TaskState(s).value for s in states]


class TaskStore:
    """SQLite-backed CampaignTask store.

    Every state change is a conditional UPDATE on the current state, so a
    transition that lost a race (or is not allowed from the current state)
    updates zero rows and the caller sees False.

    External ids are written with COALESCE: once set they are never cleared
    or overwritten.
    """

    def __init__(self, db_path: str = ".campaign_tasks.db"):
        self.db_path = db_path
        self._init()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init(self) -> None:
        parent = Path(self.db_path).parent
        parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS campaign_tasks (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    conversion_method TEXT,
                    business_profile_json TEXT,
                    strategy_json TEXT,
                    campaign_id TEXT,
                    adset_id TEXT,
                    creative_id TEXT,
                    ad_id TEXT,
                    lead_form_id TEXT,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS task_creatives (
                    id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES campaign_tasks(id) ON DELETE CASCADE,
                    slot TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    selected INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_campaign_tasks_user ON campaign_tasks(user_id, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_task_creatives_task ON task_creatives(task_id, slot, position)")
            conn.commit()

    # -----------------------------
    # Reads
    # -----------------------------

    def _creatives(self, conn: sqlite3.Connection, task_id: str) -> List[CreativeVariant]:
        cur = conn.execute(
            """
            SELECT id, slot, position, content, selected
            FROM task_creatives WHERE task_id=?
            ORDER BY slot, position
            """,
            (task_id,),
        )
        return [
            CreativeVariant(id=str(r[0]), slot=CreativeSlot(r[1]), position=int(r[2]), content=str(r[3]), selected=bool(r[4]))
            for r in cur.fetchall()
        ]

    def get(self, task_id: str) -> Optional[CampaignTask]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT {TASK_COLUMNS} FROM campaign_tasks WHERE id=?", (task_id,)).fetchone()
            if not row:
                return None
            return row_to_task(row, self._creatives(conn, task_id))

    def list_for_user(self, user_id: str, *, limit: int = 10) -> List[CampaignTask]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {TASK_COLUMNS} FROM campaign_tasks WHERE user_id=? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (user_id, int(limit)),
            ).fetchall()
            return [row_to_task(r, self._creatives(conn, str(r[0]))) for r in rows]

    def has_inflight_launch(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM campaign_tasks WHERE user_id=? AND state=? LIMIT 1",
                (user_id, TaskState.CREATING.value),
            ).fetchone()
        return row is not None

    # -----------------------------
    # Writes
    # -----------------------------

    def create(
        self,
        user_id: str,
        state: TaskState,
        *,
        business_profile: Optional[BusinessProfile] = None,
        conversion_method: Optional[ConversionMethod] = None,
        strategy: Optional[Strategy] = None,
        creatives: Optional[Sequence[CreativeVariant]] = None,
    ) -> CampaignTask:
        task_id = new_id()
        now = utcnow().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO campaign_tasks
                (id, user_id, state, conversion_method, business_profile_json, strategy_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    user_id,
                    TaskState(state).value,
                    conversion_method.value if conversion_method else None,
                    dump_json(business_profile),
                    dump_json(strategy),
                    now,
                    now,
                ),
            )
            self._insert_creatives(conn, task_id, creatives or [])
            conn.commit()
        task = self.get(task_id)
        if task is None:
            raise RuntimeError(f"Task {task_id} missing right after insert")
        return task

    def _insert_creatives(self, conn: sqlite3.Connection, task_id: str, creatives: Sequence[CreativeVariant]) -> None:
        for v in creatives:
            conn.execute(
                "INSERT INTO task_creatives (id, task_id, slot, position, content, selected) VALUES (?, ?, ?, ?, ?, ?)",
                (v.id, task_id, v.slot.value, int(v.position), v.content, 1 if v.selected else 0),
            )

    def transition(self, task_id: str, from_states: Iterable[TaskState], to_state: TaskState, **fields: Any) -> bool:
        """Move task_id to to_state if it is currently in one of from_states.

        Extra fields (business_profile, conversion_method) are written in the same UPDATE.
        """
        sets = ["state=?", "updated_at=?"]
        args: List[Any] = [TaskState(to_state).value, utcnow().isoformat()]
        if "business_profile" in fields:
            sets.append("business_profile_json=?")
            args.append(dump_json(fields["business_profile"]))
        if "conversion_method" in fields:
            sets.append("conversion_method=?")
            cm = fields["conversion_method"]
            args.append(cm.value if cm else None)

        states = _state_values(from_states)
        placeholders = ",".join("?" for _ in states)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE campaign_tasks SET {', '.join(sets)} WHERE id=? AND state IN ({placeholders})",
                (*args, task_id, *states),
            )
            conn.commit()
            return cur.rowcount == 1

    def store_strategy(self, task_id: str, strategy: Strategy, creatives: Sequence[CreativeVariant]) -> bool:
        """GENERATING -> REVIEW, writing the strategy and its creative variants atomically."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE campaign_tasks SET state=?, strategy_json=?, updated_at=?
                WHERE id=? AND state=? AND strategy_json IS NULL
                """,
                (TaskState.REVIEW.value, dump_json(strategy), utcnow().isoformat(), task_id, TaskState.GENERATING.value),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return False
            self._insert_creatives(conn, task_id, creatives)
            conn.commit()
            return True

    def select_variant(self, task_id: str, variant_id: str, slot: CreativeSlot) -> bool:
        """Deselect every sibling in the slot, then select variant_id (single transaction)."""
        allowed = _state_values(s for s in NON_TERMINAL_STATES if s != TaskState.CREATING)
        placeholders = ",".join("?" for _ in allowed)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT 1 FROM task_creatives c JOIN campaign_tasks t ON t.id = c.task_id
                WHERE c.id=? AND c.task_id=? AND c.slot=? AND t.state IN ({placeholders})
                """,
                (variant_id, task_id, slot.value, *allowed),
            ).fetchone()
            if not row:
                return False
            conn.execute("UPDATE task_creatives SET selected=0 WHERE task_id=? AND slot=?", (task_id, slot.value))
            conn.execute("UPDATE task_creatives SET selected=1 WHERE id=?", (variant_id,))
            conn.execute("UPDATE campaign_tasks SET updated_at=? WHERE id=?", (utcnow().isoformat(), task_id))
            conn.commit()
            return True

    def claim_launch(self, task_id: str, user_id: str) -> bool:
        """Atomic check-and-mark for launch: REVIEW -> CREATING only if never launched."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE campaign_tasks SET state=?, updated_at=?
                WHERE id=? AND user_id=? AND state=? AND campaign_id IS NULL AND strategy_json IS NOT NULL
                """,
                (TaskState.CREATING.value, utcnow().isoformat(), task_id, user_id, TaskState.REVIEW.value),
            )
            conn.commit()
            return cur.rowcount == 1

    def set_external_ids(self, task_id: str, **ids: Optional[str]) -> bool:
        """Record platform ids on a CREATING task. Existing values are kept."""
        unknown = set(ids) - set(EXTERNAL_ID_FIELDS)
        if unknown:
            raise ValueError(f"Unknown external id fields: {sorted(unknown)}")
        pairs = [(k, v) for k, v in ids.items() if v]
        if not pairs:
            return False
        sets = ", ".join(f"{k}=COALESCE({k}, ?)" for k, _ in pairs)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE campaign_tasks SET {sets}, updated_at=? WHERE id=? AND state=?",
                (*[v for _, v in pairs], utcnow().isoformat(), task_id, TaskState.CREATING.value),
            )
            conn.commit()
            return cur.rowcount == 1

    def mark_completed(self, task_id: str) -> bool:
        now = utcnow().isoformat()
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE campaign_tasks SET state=?, completed_at=?, updated_at=? WHERE id=? AND state=?",
                (TaskState.COMPLETED.value, now, now, task_id, TaskState.CREATING.value),
            )
            conn.commit()
            return cur.rowcount == 1

    def mark_failed(self, task_id: str, error: str) -> bool:
        states = _state_values(NON_TERMINAL_STATES)
        placeholders = ",".join("?" for _ in states)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE campaign_tasks SET state=?, last_error=?, updated_at=? WHERE id=? AND state IN ({placeholders})",
                (TaskState.FAILED.value, error, utcnow().isoformat(), task_id, *states),
            )
            conn.commit()
            return cur.rowcount == 1


def build_task_store(db_path: str | None = None):
    """Factory: SQLite (default) or Postgres.

    Enable Postgres store by setting:
      TASK_STORE_SOURCE=db
      DATABASE_URL=...
    """
    source = (os.getenv("TASK_STORE_SOURCE") or "").strip().lower()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if source == "db":
        if not database_url:
            raise ValueError("TASK_STORE_SOURCE=db but DATABASE_URL is not set.")
        from task_store_pg import TaskStorePG

        return TaskStorePG(database_url)

    path = (db_path or os.getenv("TASK_DB_PATH") or ".campaign_tasks.db").strip() or ".campaign_tasks.db"
    return TaskStore(path)
