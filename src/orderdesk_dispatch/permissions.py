from __future__ import annotations

from collections.abc import Iterable

from orderdesk_dispatch.errors import PermissionDeniedError
from orderdesk_dispatch.schemas import ActingIdentity, PermissionKey, PermissionMode


def effective_permission_keys(
    identity: ActingIdentity | None,
    *,
    mode: PermissionMode = PermissionMode.FIRST_ROLE,
) -> set[str]:
    if identity is None or not identity.roles:
        return set()
    if mode == PermissionMode.FIRST_ROLE:
        return set(identity.roles[0].permission_keys)
    if mode == PermissionMode.UNION:
        keys: set[str] = set()
        for role in identity.roles:
            keys.update(role.permission_keys)
        return keys
    raise ValueError(f"unsupported permission mode: {mode!r}")


def is_permitted(
    identity: ActingIdentity | None,
    required_keys: Iterable[PermissionKey | str],
    *,
    mode: PermissionMode = PermissionMode.FIRST_ROLE,
) -> bool:
    granted = effective_permission_keys(identity, mode=mode)
    if not granted:
        return False
    return all(_key_value(key) in granted for key in required_keys)


def require_permissions(
    identity: ActingIdentity | None,
    required_keys: Iterable[PermissionKey | str],
    *,
    operation: str,
    mode: PermissionMode = PermissionMode.FIRST_ROLE,
) -> None:
    required = [_key_value(key) for key in required_keys]
    if is_permitted(identity, required, mode=mode):
        return
    granted = effective_permission_keys(identity, mode=mode)
    missing = [key for key in required if key not in granted]
    raise PermissionDeniedError(
        f"missing permission {', '.join(missing)}",
        operation=operation,
    )


def _key_value(key: PermissionKey | str) -> str:
    return key.value if isinstance(key, PermissionKey) else key
