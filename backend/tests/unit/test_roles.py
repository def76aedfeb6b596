from editorial_engine.core.errors import EntityStoreError
from editorial_engine.core.roles import (
    SYSTEM_ACTOR_ID,
    Role,
    StaticRoleProvider,
    StoreRoleProvider,
    normalize_roles,
    primary_role,
)
from editorial_engine.lib.entity_store import InMemoryEntityStore


def test_normalize_roles_handles_aliases_and_noise():
    assert normalize_roles(["Managing_Editor", "reviewer", "", None, "intern"]) == {Role.EDITOR, Role.REVIEWER}
    assert normalize_roles("super_admin") == {Role.ADMIN}
    assert normalize_roles(None) == set()


def test_primary_role_prefers_highest_privilege():
    assert primary_role({Role.AUTHOR, Role.EDITOR}) == Role.EDITOR
    assert primary_role({Role.AUTHOR, Role.ADMIN, Role.REVIEWER}) == Role.ADMIN
    assert primary_role(set()) is None


def test_static_provider_and_system_actor():
    provider = StaticRoleProvider({"u1": "editor"})
    provider.assign("u2", Role.AUTHOR)
    assert provider.role_of("u1") == Role.EDITOR
    assert provider.role_of("u2") == Role.AUTHOR
    assert provider.role_of("nobody") is None
    assert provider.role_of(SYSTEM_ACTOR_ID) == Role.SYSTEM


def test_store_provider_reads_user_profiles():
    store = InMemoryEntityStore()
    store.create("user_profiles", {"id": "u1", "roles": ["author", "production_editor"]})
    provider = StoreRoleProvider(store)
    assert provider.role_of("u1") == Role.EDITOR
    assert provider.role_of("missing") is None
    assert provider.role_of(SYSTEM_ACTOR_ID) == Role.SYSTEM


def test_store_provider_read_failure_means_no_role():
    class _BrokenStore:
        def get(self, table, row_id):
            raise EntityStoreError("timeout")

    assert StoreRoleProvider(_BrokenStore()).role_of("u1") is None
