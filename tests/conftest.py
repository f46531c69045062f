"""
Shared fixtures: an in-memory Supabase client and a scripted provider.

FakeSupabase implements the slice of the postgrest query builder the store
and the credit ledger use (select / insert / update, eq, is_, or_, order,
limit). Inserted rows get every declared column, unset ones at their default.
"""

import copy
import itertools
from collections import defaultdict
from datetime import timedelta
from enum import Enum

import pytest
from postgrest.exceptions import APIError

from adworker import config
from adworker import fal_merge
from adworker import kie
from adworker import metrics
from adworker import providers
from adworker.pipeline import store
from adworker.pipeline.models import Project, Segment, TaskKind, TaskResult, TaskState


# ═════════════════════════════════════════════════════════════════════════════
# In-memory Supabase
# ═════════════════════════════════════════════════════════════════════════════

class FakeResponse:
    def __init__(self, data):
        self.data = data


def _coerce(value: str):
    if value == "true":
        return True
    if value == "false":
        return False
    if value == "null":
        return None
    return value


def _split_top_level(expression: str) -> list[str]:
    """Split an or_() filter on commas that are not inside parentheses."""
    parts, depth, current = [], 0, ""
    for char in expression:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            parts.append(current)
            current = ""
        else:
            current += char
    if current:
        parts.append(current)
    return parts


def _clause_matches(row: dict, clause: str) -> bool:
    column, rest = clause.split(".", 1)
    negate = rest.startswith("not.")
    if negate:
        rest = rest[len("not."):]
    op, value = rest.split(".", 1)
    actual = row.get(column)

    if op == "eq":
        matched = actual == _coerce(value)
    elif op == "is":
        matched = actual is _coerce(value)
    elif op == "in":
        matched = actual in value.strip("()").split(",")
    else:
        raise NotImplementedError(f"or_ operator {op}")
    return not matched if negate else matched


def _column_defaults(model) -> dict:
    """Stand-in for table DEFAULTs: nullable columns are NULL, the rest take the model default."""
    defaults = {}
    for name, field in model.model_fields.items():
        value = None if field.is_required() else field.get_default(call_default_factory=True)
        defaults[name] = value.value if isinstance(value, Enum) else value
    return defaults


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.operation = "select"
        self.payload = None
        self.filters = []
        self.ordering = None
        self.row_limit = None

    # ── Operations ───────────────────────────────────────────────────────────

    def select(self, *columns, **kwargs):
        self.operation = "select"
        return self

    def insert(self, payload):
        self.operation = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.operation = "update"
        self.payload = payload
        return self

    # ── Filters ──────────────────────────────────────────────────────────────

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def is_(self, column, value):
        expected = _coerce(value)
        self.filters.append(lambda row: row.get(column) is expected)
        return self

    def or_(self, expression):
        clauses = _split_top_level(expression)
        self.filters.append(lambda row: any(_clause_matches(row, c) for c in clauses))
        return self

    def order(self, column, desc=False, nullsfirst=False):
        self.ordering = (column, desc, nullsfirst)
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    # ── Execution ────────────────────────────────────────────────────────────

    def _matching(self) -> list[dict]:
        rows = [row for row in self.db.tables[self.table_name] if all(f(row) for f in self.filters)]
        if self.ordering:
            column, desc, nullsfirst = self.ordering
            present = sorted((r for r in rows if r.get(column) is not None), key=lambda r: r[column], reverse=desc)
            missing = [r for r in rows if r.get(column) is None]
            rows = missing + present if nullsfirst else present + missing
        if self.row_limit is not None:
            rows = rows[: self.row_limit]
        return rows

    def execute(self):
        key = (self.table_name, self.operation)
        if key in self.db.failures:
            message = self.db.failures.pop(key)
            raise APIError({"message": message, "code": "500", "hint": None, "details": None})
        self.db.calls[key] += 1

        if self.operation == "insert":
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for row in payload:
                stored = copy.deepcopy(self.db.columns.get(self.table_name, {}))
                stored.update(copy.deepcopy(row))
                if stored.get("id") is None:
                    stored["id"] = f"{self.table_name}-{next(self.db.ids)}"
                self.db.tables[self.table_name].append(stored)
                inserted.append(copy.deepcopy(stored))
            return FakeResponse(inserted)

        if self.operation == "update":
            matched = self._matching()
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return FakeResponse([copy.deepcopy(row) for row in matched])

        return FakeResponse([copy.deepcopy(row) for row in self._matching()])


class FakeSupabase:
    def __init__(self):
        self.tables = defaultdict(list)
        self.failures = {}
        self.calls = defaultdict(int)
        self.ids = itertools.count(1)
        self.columns = {
            store.PROJECTS_TABLE: _column_defaults(Project),
            store.SEGMENTS_TABLE: _column_defaults(Segment),
        }

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def fail_next(self, table: str, operation: str, message: str = "database unavailable"):
        self.failures[(table, operation)] = message

    # ── Test helpers ─────────────────────────────────────────────────────────

    def project(self, project_id: str) -> dict:
        return next(r for r in self.tables[store.PROJECTS_TABLE] if r["id"] == project_id)

    def segments(self, project_id: str) -> list[dict]:
        rows = [r for r in self.tables[store.SEGMENTS_TABLE] if r["project_id"] == project_id]
        return sorted(rows, key=lambda r: r["segment_index"])

    def balance(self, user_id: str) -> int:
        return next(r for r in self.tables["user_credits"] if r["user_id"] == user_id)["credits_remaining"]

    def transactions(self, user_id: str, transaction_type: str = None) -> list[dict]:
        return [
            r for r in self.tables["credit_transactions"]
            if r["user_id"] == user_id and (transaction_type is None or r["type"] == transaction_type)
        ]

    def add_project(self, **fields) -> dict:
        now = store.now_utc()
        row = copy.deepcopy(self.columns[store.PROJECTS_TABLE])
        row.update({
            "id": f"project-{next(self.ids)}",
            "user_id": "user-1",
            "ad_type": "standard",
            "status": "processing",
            "current_step": "generating_cover",
            "progress_percentage": 30,
            "is_segmented": False,
            "segment_count": 1,
            "video_model": "veo3_fast",
            "image_model": "nano_banana",
            "video_aspect_ratio": "16:9",
            "original_image_url": "https://cdn.example.com/product.png",
            "video_prompts": {"description": "A bottle of sparkling water on a sunny beach"},
            "retry_count": 0,
            "credits_cost": 0,
            "created_at": now.isoformat(),
            "last_processed_at": now.isoformat(),
        })
        row.update(fields)
        for key in ("created_at", "last_processed_at"):
            if hasattr(row.get(key), "isoformat"):
                row[key] = row[key].isoformat()
        self.tables[store.PROJECTS_TABLE].append(row)
        return row


def minutes_ago(minutes: float):
    return store.now_utc() - timedelta(minutes=minutes)


# ═════════════════════════════════════════════════════════════════════════════
# Scripted provider
# ═════════════════════════════════════════════════════════════════════════════

class FakeProvider:
    """
    Stands in for `providers.submit_task` / `providers.check_status`.

    Task ids are `<kind>-<n>`. Status results are scripted per task id; a
    scripted list is consumed front to back and its last entry repeats.
    Unscripted tasks report `default`.
    """

    def __init__(self):
        self.counters = defaultdict(int)
        self.submissions = []
        self.status_calls = []
        self.scripts = {}
        self.submit_errors = []
        self.default = TaskResult(status=TaskState.GENERATING)

    def submit_task(self, kind: TaskKind, payload) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.counters[kind] += 1
        task_id = f"{kind.value}-{self.counters[kind]}"
        self.submissions.append((kind, payload, task_id))
        return task_id

    def check_status(self, task_id: str, kind: TaskKind, model=None) -> TaskResult:
        self.status_calls.append(task_id)
        script = self.scripts.get(task_id)
        if not script:
            return self.default
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    # ── Scripting helpers ────────────────────────────────────────────────────

    def script(self, task_id: str, *outcomes):
        self.scripts[task_id] = list(outcomes)

    def succeed(self, task_id: str, url: str):
        self.script(task_id, TaskResult(status=TaskState.SUCCESS, result_url=url))

    def fail(self, task_id: str, message: str = "Internal error", retryable: bool = False):
        self.script(
            task_id,
            TaskResult(status=TaskState.FAILED, error_message=message, is_retryable=retryable),
        )

    def submitted(self, kind: TaskKind) -> list:
        return [(payload, task_id) for k, payload, task_id in self.submissions if k is kind]


# ═════════════════════════════════════════════════════════════════════════════
# Fixtures
# ═════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def db():
    fake = FakeSupabase()
    fake.tables["user_credits"].append({"user_id": "user-1", "credits_remaining": 500})
    store.set_client(fake)
    yield fake
    store.set_client(None)


@pytest.fixture
def provider(monkeypatch):
    fake = FakeProvider()
    monkeypatch.setattr(providers, "submit_task", fake.submit_task)
    monkeypatch.setattr(providers, "check_status", fake.check_status)
    return fake


@pytest.fixture(autouse=True)
def fast_clock(monkeypatch):
    monkeypatch.setattr(config, "SWEEP_DELAY_SECONDS", 0)
    monkeypatch.setattr(kie.time, "sleep", lambda seconds: None)
    monkeypatch.setattr(fal_merge.time, "sleep", lambda seconds: None)


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset()
    yield
    metrics.reset()
