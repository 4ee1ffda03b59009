from pathlib import Path
import re

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from fulfillment.db import Base


SERVER_DIR = Path(__file__).resolve().parents[2]
VERSIONS_DIR = SERVER_DIR / "alembic" / "versions"
REVISION_RE = re.compile(r'^revision = "([^"]+)"', re.MULTILINE)
DOWN_REVISION_RE = re.compile(r'^down_revision = (None|"([^"]+)")', re.MULTILINE)


def _revisions() -> dict[str, str | None]:
    chain = {}
    for migration_file in VERSIONS_DIR.glob("*.py"):
        text = migration_file.read_text(encoding="utf-8")
        revision = REVISION_RE.search(text)
        down_revision = DOWN_REVISION_RE.search(text)
        if revision and down_revision:
            chain[revision.group(1)] = down_revision.group(2)
    return chain


def test_alembic_revision_ids_fit_version_table_limit():
    """Postgres alembic_version.version_num is varchar(32)."""
    too_long = [(revision, len(revision)) for revision in _revisions() if len(revision) > 32]

    assert not too_long, f"Alembic revision IDs must be <= 32 chars. Found: {too_long}"


def test_alembic_history_is_a_single_linear_chain():
    chain = _revisions()
    roots = [revision for revision, parent in chain.items() if parent is None]
    parents = [parent for parent in chain.values() if parent is not None]

    assert len(roots) == 1
    assert len(parents) == len(set(parents)), "Two revisions share a parent"
    assert set(parents) <= set(chain)


def test_upgrade_head_creates_every_mapped_table(tmp_path, monkeypatch):
    database_url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv("DATABASE_URL", database_url)
    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(SERVER_DIR / "alembic"))

    command.upgrade(alembic_cfg, "head")

    engine = create_engine(database_url)
    tables = set(inspect(engine).get_table_names()) - {"alembic_version"}
    assert tables == set(Base.metadata.tables)

    command.downgrade(alembic_cfg, "base")
    assert set(inspect(engine).get_table_names()) - {"alembic_version"} == set()
    engine.dispose()
