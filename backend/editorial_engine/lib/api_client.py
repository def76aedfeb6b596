from typing import Any, Callable, Optional

from supabase import Client, create_client

from editorial_engine.core.config import app_config

url: str = app_config.supabase_url
service_role_key: str = app_config.supabase_key


class _LazySupabaseClient:
    """
    延迟初始化 Supabase Client，避免在 import 时因为缺少环境变量导致整个模块导入失败。

    中文注释:
    - 单元测试会 patch `supabase_admin` 或直接注入 fake client，因此这里必须保证“可导入”。
    - 真实运行时，如果缺少 URL/KEY，在第一次访问 client 时抛出清晰错误即可。
    """

    def __init__(self, factory: Callable[[], Client], *, name: str):
        self._factory = factory
        self._name = name
        self._client: Optional[Client] = None

    def _get(self) -> Client:
        if self._client is None:
            self._client = self._factory()
        return self._client

    def __getattr__(self, item: str) -> Any:
        return getattr(self._get(), item)


def _create_supabase_admin() -> Client:
    if not url:
        raise RuntimeError("SUPABASE_URL is required")
    if not service_role_key:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY is required")
    return create_client(url, service_role_key)


# === 引擎使用 service_role 客户端读写（兼容云端 RLS） ===
supabase_admin: Client = _LazySupabaseClient(_create_supabase_admin, name="supabase_admin")  # type: ignore[assignment]
