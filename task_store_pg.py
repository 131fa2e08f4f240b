from typing import Any, Iterable, List, Optional, Sequence

import psycopg

from campaign_task import (
    EXTERNAL_ID_FIELDS,
    BusinessProfile,
    CampaignTask,
    ConversionMethod,
    CreativeSlot,
    CreativeVariant,
    NON_TERMINAL_STATES,
    Strategy,
    TaskState,
)
from task_store import TASK_COLUMNS, _state_values, dump_json, new_id, row_to_task


class TaskStorePG:
    """Postgres-backed CampaignTask store.

    Same contract as the SQLite TaskStore. The launch claim relies on a single
    conditional UPDATE, which Postgres serializes per row, so two concurrent
    launch requests for one task can never both succeed.

    Tables:
      - campaign_tasks
      - task_creatives
    """

    def __init__(self, database_url: str, *, prefix: str = ""):
        self.database_url = database_url
        self.prefix = prefix.strip()
        self._init()

    def _conn(self):
        return psycopg.connect(self.database_url)

    def _t(self, name: str) -> str:
        return f"{self.prefix}{name}" if self.prefix else name

    def _init(self) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('campaign_tasks')} (
                      id TEXT PRIMARY KEY,
                      user_id TEXT NOT NULL,
                      state TEXT NOT NULL,
                      conversion_method TEXT,
                      business_profile_json JSONB,
                      strategy_json JSONB,
                      campaign_id TEXT,
                      adset_id TEXT,
                      creative_id TEXT,
                      ad_id TEXT,
                      lead_form_id TEXT,
                      last_error TEXT,
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                      completed_at TIMESTAMPTZ,
                      seq BIGSERIAL
                    )
                    """
                )
                cur.execute(f"ALTER TABLE {self._t('campaign_tasks')} ADD COLUMN IF NOT EXISTS seq BIGSERIAL")
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('task_creatives')} (
                      id TEXT PRIMARY KEY,
                      task_id TEXT NOT NULL REFERENCES {self._t('campaign_tasks')}(id) ON DELETE CASCADE,
                      slot TEXT NOT NULL,
                      position INTEGER NOT NULL,
                      content TEXT NOT NULL,
                      selected BOOLEAN NOT NULL DEFAULT false
                    )
                    """
                )
                cur.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{self._t('campaign_tasks')}_user ON {self._t('campaign_tasks')}(user_id, created_at)"
                )
                cur.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{self._t('task_creatives')}_task ON {self._t('task_creatives')}(task_id, slot, position)"
                )
            conn.commit()

    def _creatives(self, cur, task_id: str) -> List[CreativeVariant]:
        cur.execute(
            f"""
            SELECT id, slot, position, content, selected
            FROM {self._t('task_creatives')} WHERE task_id=%s
            ORDER BY slot, position
            """,
            (task_id,),
        )
        return [
            CreativeVariant(id=str(r[0]), slot=CreativeSlot(r[1]), position=int(r[2]), content=str(r[3]), selected=bool(r[4]))
            for r in cur.fetchall()
        ]

    def _insert_creatives(self, cur, task_id: str, creatives: Sequence[CreativeVariant]) -> None:
        for v in creatives:
            cur.execute(
                f"""
                INSERT INTO {self._t('task_creatives')} (id, task_id, slot, position, content, selected)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (v.id, task_id, v.slot.value, int(v.position), v.content, bool(v.selected)),
            )

    # -----------------------------
    # Reads
    # -----------------------------

    def get(self, task_id: str) -> Optional[CampaignTask]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {TASK_COLUMNS} FROM {self._t('campaign_tasks')} WHERE id=%s", (task_id,))
                row = cur.fetchone()
                if not row:
                    return None
                return row_to_task(row, self._creatives(cur, task_id))

    def list_for_user(self, user_id: str, *, limit: int = 10) -> List[CampaignTask]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {TASK_COLUMNS} FROM {self._t('campaign_tasks')}
                    WHERE user_id=%s ORDER BY created_at DESC, seq DESC LIMIT %s
                    """,
                    (user_id, int(limit)),
                )
                rows = cur.fetchall()
                return [row_to_task(r, self._creatives(cur, str(r[0]))) for r in rows]

    def has_inflight_launch(self, user_id: str) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT 1 FROM {self._t('campaign_tasks')} WHERE user_id=%s AND state=%s LIMIT 1",
                    (user_id, TaskState.CREATING.value),
                )
                return cur.fetchone() is not None

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
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self._t('campaign_tasks')}
                      (id, user_id, state, conversion_method, business_profile_json, strategy_json)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        task_id,
                        user_id,
                        TaskState(state).value,
                        conversion_method.value if conversion_method else None,
                        dump_json(business_profile),
                        dump_json(strategy),
                    ),
                )
                self._insert_creatives(cur, task_id, creatives or [])
            conn.commit()
        task = self.get(task_id)
        if task is None:
            raise RuntimeError(f"Task {task_id} missing right after insert")
        return task

    def transition(self, task_id: str, from_states: Iterable[TaskState], to_state: TaskState, **fields: Any) -> bool:
        sets = ["state=%s", "updated_at=now()"]
        args: List[Any] = [TaskState(to_state).value]
        if "business_profile" in fields:
            sets.append("business_profile_json=%s")
            args.append(dump_json(fields["business_profile"]))
        if "conversion_method" in fields:
            sets.append("conversion_method=%s")
            cm = fields["conversion_method"]
            args.append(cm.value if cm else None)

        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self._t('campaign_tasks')} SET {', '.join(sets)} WHERE id=%s AND state = ANY(%s)",
                    (*args, task_id, _state_values(from_states)),
                )
                n = int(cur.rowcount or 0)
            conn.commit()
        return n == 1

    def store_strategy(self, task_id: str, strategy: Strategy, creatives: Sequence[CreativeVariant]) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self._t('campaign_tasks')} SET state=%s, strategy_json=%s, updated_at=now()
                    WHERE id=%s AND state=%s AND strategy_json IS NULL
                    """,
                    (TaskState.REVIEW.value, dump_json(strategy), task_id, TaskState.GENERATING.value),
                )
                if int(cur.rowcount or 0) != 1:
                    conn.rollback()
                    return False
                self._insert_creatives(cur, task_id, creatives)
            conn.commit()
        return True

    def select_variant(self, task_id: str, variant_id: str, slot: CreativeSlot) -> bool:
        allowed = _state_values(s for s in NON_TERMINAL_STATES if s != TaskState.CREATING)
        with self._conn() as conn:
            with conn.cursor() as cur:
                # Row lock on the task so concurrent selections in one slot serialize.
                cur.execute(
                    f"SELECT state FROM {self._t('campaign_tasks')} WHERE id=%s FOR UPDATE",
                    (task_id,),
                )
                row = cur.fetchone()
                if not row or row[0] not in allowed:
                    conn.rollback()
                    return False
                cur.execute(
                    f"SELECT 1 FROM {self._t('task_creatives')} WHERE id=%s AND task_id=%s AND slot=%s",
                    (variant_id, task_id, slot.value),
                )
                if cur.fetchone() is None:
                    conn.rollback()
                    return False
                cur.execute(
                    f"UPDATE {self._t('task_creatives')} SET selected=(id=%s) WHERE task_id=%s AND slot=%s",
                    (variant_id, task_id, slot.value),
                )
                cur.execute(f"UPDATE {self._t('campaign_tasks')} SET updated_at=now() WHERE id=%s", (task_id,))
            conn.commit()
        return True

    def claim_launch(self, task_id: str, user_id: str) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self._t('campaign_tasks')} SET state=%s, updated_at=now()
                    WHERE id=%s AND user_id=%s AND state=%s
                      AND campaign_id IS NULL AND strategy_json IS NOT NULL
                    """,
                    (TaskState.CREATING.value, task_id, user_id, TaskState.REVIEW.value),
                )
                n = int(cur.rowcount or 0)
            conn.commit()
        return n == 1

    def set_external_ids(self, task_id: str, **ids: Optional[str]) -> bool:
        unknown = set(ids) - set(EXTERNAL_ID_FIELDS)
        if unknown:
            raise ValueError(f"Unknown external id fields: {sorted(unknown)}")
        pairs = [(k, v) for k, v in ids.items() if v]
        if not pairs:
            return False
        sets = ", ".join(f"{k}=COALESCE({k}, %s)" for k, _ in pairs)
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self._t('campaign_tasks')} SET {sets}, updated_at=now() WHERE id=%s AND state=%s",
                    (*[v for _, v in pairs], task_id, TaskState.CREATING.value),
                )
                n = int(cur.rowcount or 0)
            conn.commit()
        return n == 1

    def mark_completed(self, task_id: str) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self._t('campaign_tasks')}
                    SET state=%s, completed_at=now(), updated_at=now()
                    WHERE id=%s AND state=%s
                    """,
                    (TaskState.COMPLETED.value, task_id, TaskState.CREATING.value),
                )
                n = int(cur.rowcount or 0)
            conn.commit()
        return n == 1

    def mark_failed(self, task_id: str, error: str) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self._t('campaign_tasks')}
                    SET state=%s, last_error=%s, updated_at=now()
                    WHERE id=%s AND state = ANY(%s)
                    """,
                    (TaskState.FAILED.value, error, task_id, _state_values(NON_TERMINAL_STATES)),
                )
                n = int(cur.rowcount or 0)
            conn.commit()
        return n == 1
