from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID


def generate_doi(
    *,
    manuscript_id: str | UUID,
    prefix: str = "10.5555",
    issued_at: datetime | None = None,
    journal_slug: str = "scholarflow",
) -> str:
    """
    录用后分配 DOI（本地生成，注册由 Crossref 侧负责）

    规则:
    - 格式: {prefix}/{journal_slug}.{year}.{8_char_id}
    - 8_char_id 取 manuscript id 去掉短横线后的前 8 位
    """
    year = (issued_at or datetime.now(timezone.utc)).year
    short = str(manuscript_id).replace("-", "")[:8].lower()
    if not short:
        short = "unknown"
    return f"{prefix}/{journal_slug}.{year}.{short}"
