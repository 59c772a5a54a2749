"""
Permission interceptor for envelope operations.

The engine enforces authorization but does not define policy.  The host
application registers one checker:

    set_permission_checker(app, lambda actor_id, codename: ...)

and every public service operation is decorated:

    @requires_permission(PERM_MANAGE)
    def void_envelope(envelope_id, *, actor_id=None, ...):
        ...

When no ``actor_id`` is passed (in-process system / background callers)
or no checker is registered, the decorator passes through.  The HTTP
blueprints never pass None while a checker is registered.  A denial raises
PermissionDeniedError before the wrapped function performs any read or
write.
"""

import functools
import logging
from typing import Callable

from flask import current_app

from esign.core.exceptions import PermissionDeniedError

logger = logging.getLogger(__name__)

PERM_MANAGE = "envelope.manage"
PERM_READ = "envelope.read"

_EXTENSION_KEY = "esign_permission_checker"

PermissionChecker = Callable[[str, str], bool]


def set_permission_checker(app, checker: PermissionChecker | None) -> None:
    """Register (or clear, with None) the host application's permission checker."""
    app.extensions[_EXTENSION_KEY] = checker


def get_permission_checker() -> PermissionChecker | None:
    return current_app.extensions.get(_EXTENSION_KEY)


def check_permission(actor_id, codename: str) -> None:
    """Raise PermissionDeniedError if the registered checker rejects the actor."""
    if actor_id is None:
        return
    checker = get_permission_checker()
    if checker is None:
        return
    if not checker(actor_id, codename):
        logger.warning(
            "Actor %s denied: missing permission '%s'", actor_id, codename,
            extra={"actor_id": actor_id},
        )
        raise PermissionDeniedError(codename, actor_id=actor_id)


def requires_permission(codename: str):
    """
    Decorator: run the permission check for the call's ``actor_id`` keyword.

    Args:
        codename: Permission codename, e.g. "envelope.manage"
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            check_permission(kwargs.get("actor_id"), codename)
            return f(*args, **kwargs)
        return decorated
    return decorator
