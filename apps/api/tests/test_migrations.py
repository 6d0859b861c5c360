"""
Migration graph checks.

Every new revision must chain off the current head: a second head or a
second root makes ``alembic upgrade head`` ambiguous. The tables the
migrations create must match the ORM models the services use.
"""
import re
from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory

from core.database import Base

API_ROOT = Path(__file__).resolve().parents[1]


def _script_directory() -> ScriptDirectory:
    cfg = Config(str(API_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(API_ROOT / "alembic"))
    return ScriptDirectory.from_config(cfg)


def test_single_head_and_root():
    script = _script_directory()
    revisions = list(script.walk_revisions())

    assert len(script.get_heads()) == 1, f"Multiple heads: {script.get_heads()}"
    roots = [r.revision for r in revisions if r.down_revision is None]
    assert roots == ["001_initial"]


def test_migrations_create_every_model_table():
    created = set()
    for path in (API_ROOT / "alembic" / "versions").glob("*.py"):
        created.update(re.findall(r'op\.create_table\(\s*"(\w+)"', path.read_text()))

    assert created == set(Base.metadata.tables)
