"""
Role-based command dispatch.

Every mutating engine operation is a ``Command`` whose required caller role
is looked up in ``REQUIRED_ROLE``. The engine calls ``authorize`` once per
command before touching state, so access control lives in one place.
"""

from __future__ import annotations

from enum import Enum

from .account import GuardedAccount, normalize_address
from .errors import NotAgentError, NotOwnerError


class Role(str, Enum):
    OWNER = "owner"
    AGENT = "agent"
    PUBLIC = "public"


class Command(str, Enum):
    SET_POLICY = "set_policy"
    SET_AGENT = "set_agent"
    SET_ENDPOINT_ALLOWED = "set_endpoint_allowed"
    SET_ENDPOINT_ALLOWED_BY_URL = "set_endpoint_allowed_by_url"
    SET_ALLOW_ALL_ENDPOINTS = "set_allow_all_endpoints"
    APPROVE_PAYMENT = "approve_payment"
    REJECT_PAYMENT = "reject_payment"
    WITHDRAW = "withdraw"
    WITHDRAW_ALL = "withdraw_all"
    EXECUTE_PAYMENT = "execute_payment"
    FUND = "fund"


REQUIRED_ROLE: dict[Command, Role] = {
    Command.SET_POLICY: Role.OWNER,
    Command.SET_AGENT: Role.OWNER,
    Command.SET_ENDPOINT_ALLOWED: Role.OWNER,
    Command.SET_ENDPOINT_ALLOWED_BY_URL: Role.OWNER,
    Command.SET_ALLOW_ALL_ENDPOINTS: Role.OWNER,
    Command.APPROVE_PAYMENT: Role.OWNER,
    Command.REJECT_PAYMENT: Role.OWNER,
    Command.WITHDRAW: Role.OWNER,
    Command.WITHDRAW_ALL: Role.OWNER,
    Command.EXECUTE_PAYMENT: Role.AGENT,
    Command.FUND: Role.PUBLIC,
}


def roles_of(caller: str, account: GuardedAccount) -> set[Role]:
    """Roles held by ``caller`` on ``account`` (owner and agent may coincide)."""
    normalized = normalize_address(caller)
    roles = {Role.PUBLIC}
    if normalized == account.owner:
        roles.add(Role.OWNER)
    if normalized == account.agent:
        roles.add(Role.AGENT)
    return roles


def authorize(command: Command, caller: str, account: GuardedAccount) -> None:
    """Raise if ``caller`` may not run ``command`` on ``account``."""
    required = REQUIRED_ROLE[command]
    if required in roles_of(caller, account):
        return
    if required == Role.OWNER:
        raise NotOwnerError(caller)
    raise NotAgentError(caller)
