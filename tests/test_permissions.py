import pytest

from orderdesk_dispatch.errors import PermissionDeniedError
from orderdesk_dispatch.permissions import effective_permission_keys, is_permitted, require_permissions
from orderdesk_dispatch.schemas import ActingIdentity, Permission, PermissionKey, PermissionMode, Role


def _role(name: str, *keys: str) -> Role:
    return Role(name=name, permissions=[Permission(key=key) for key in keys])


def _identity(*roles: Role) -> ActingIdentity:
    return ActingIdentity(id="agent-1", name="Agent One", roles=list(roles))


def test_first_role_decides_permissions_by_default() -> None:
    identity = _identity(_role("agent", "order.asign"), _role("supervisor", "order.cancel"))

    assert effective_permission_keys(identity) == {"order.asign"}
    assert is_permitted(identity, [PermissionKey.ORDER_ASSIGN])
    assert not is_permitted(identity, [PermissionKey.ORDER_CANCEL])


def test_union_mode_merges_every_role() -> None:
    identity = _identity(_role("agent", "order.asign"), _role("supervisor", "order.cancel"))

    keys = effective_permission_keys(identity, mode=PermissionMode.UNION)

    assert keys == {"order.asign", "order.cancel"}
    assert is_permitted(identity, [PermissionKey.ORDER_ASSIGN, PermissionKey.ORDER_CANCEL], mode=PermissionMode.UNION)


def test_identity_without_roles_is_denied_everything() -> None:
    assert effective_permission_keys(None) == set()
    assert not is_permitted(None, [PermissionKey.ORDER_VIEW])
    assert not is_permitted(ActingIdentity(id="agent-1"), [PermissionKey.ORDER_VIEW])


def test_role_with_null_permissions_grants_nothing() -> None:
    identity = _identity(Role(name="guest", permissions=None), _role("agent", "order.asign"))

    assert not is_permitted(identity, [PermissionKey.ORDER_ASSIGN])


def test_wire_keys_keep_their_historical_spelling() -> None:
    assert PermissionKey.ORDER_ASSIGN.value == "order.asign"
    assert PermissionKey.ORDER_UNASSIGN.value == "order.unasign"


def test_require_permissions_names_operation_and_missing_keys() -> None:
    identity = _identity(_role("agent", "order.process"))

    with pytest.raises(PermissionDeniedError) as excinfo:
        require_permissions(
            identity,
            [PermissionKey.ORDER_PROCESS, PermissionKey.ORDER_CANCEL],
            operation="status-update",
        )

    assert excinfo.value.operation == "status-update"
    assert excinfo.value.user_message == "status-update failed: missing permission order.cancel"


def test_require_permissions_passes_when_all_keys_granted() -> None:
    identity = _identity(_role("agent", "order.process", "order.cancel"))

    require_permissions(identity, ["order.process", "order.cancel"], operation="status-update")
