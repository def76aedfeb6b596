import logging
import os
from pathlib import Path
from typing import Optional

import psycopg2

logger = logging.getLogger("editorial_engine.migrations")

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"


def migration_files(directory: Optional[Path] = None) -> list[Path]:
    """按文件名排序的 *.sql 列表（001_xxx.sql, 002_xxx.sql ...）"""
    return sorted((directory or MIGRATIONS_DIR).glob("*.sql"))


def apply_migrations(dsn: Optional[str] = None, *, directory: Optional[Path] = None) -> list[str]:
    """
    依次执行 backend/migrations 下的 SQL（全部使用 IF NOT EXISTS，可重复执行）。

    中文注释:
    - DSN 从 DATABASE_URL 读取，不在代码里写死任何连接信息。
    - 每个文件单独提交；中途失败时已执行的文件保持生效，抛出原始异常。
    """
    dsn = dsn or (os.environ.get("DATABASE_URL") or "").strip()
    if not dsn:
        raise RuntimeError("DATABASE_URL is required to apply migrations")

    applied: list[str] = []
    conn = psycopg2.connect(dsn)
    try:
        for path in migration_files(directory):
            logger.info("Applying migration %s", path.name)
            with conn.cursor() as cur:
                cur.execute(path.read_text(encoding="utf-8"))
            conn.commit()
            applied.append(path.name)
    except psycopg2.Error:
        conn.rollback()
        logger.exception("Migration failed after %s", applied[-1] if applied else "start")
        raise
    finally:
        conn.close()
    logger.info("Applied %s migration(s)", len(applied))
    return applied


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    apply_migrations()
