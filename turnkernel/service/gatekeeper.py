from __future__ import annotations

import hmac
import ipaddress
from dataclasses import dataclass
from typing import Optional

from turnkernel.config import Environment
from turnkernel.logging import get_logger
from turnkernel.service.errors import AuthError, AuthReason, ConfigurationError
from turnkernel.service.ingress import ToolsState

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthResult:
    authorized: bool
    reason: AuthReason


def bearer_token(header_value: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def check_admin_credential(credential: Optional[str], secret: Optional[str]) -> AuthResult:
    """Compare ``credential`` to the server-held secret in constant time.

    A missing secret is reported separately from a wrong credential so
    operators can tell misconfiguration from misuse.
    """
    if not secret:
        return AuthResult(False, AuthReason.NOT_CONFIGURED)
    if not credential:
        return AuthResult(False, AuthReason.MISSING)
    if hmac.compare_digest(credential.encode("utf-8"), secret.encode("utf-8")):
        return AuthResult(True, AuthReason.OK)
    return AuthResult(False, AuthReason.INVALID)


def is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


@dataclass(frozen=True)
class GateDecision:
    effective: ToolsState
    functions_authorized: bool
    authorized_via: Optional[str] = None


class ToolGatekeeper:
    """Decides the effective tool set for a turn.

    Function tools are never quietly switched off: a request for them that
    cannot be authorized fails the whole turn with a 401.
    """

    def __init__(
        self,
        *,
        admin_token: Optional[str],
        environment: Environment,
        dev_bypass: bool = False,
    ) -> None:
        self._admin_token = admin_token
        self._environment = environment
        self._dev_bypass = dev_bypass

    def dev_bypass_active(self, client_host: Optional[str]) -> bool:
        return (
            self._dev_bypass
            and self._environment != Environment.PRODUCTION
            and is_loopback(client_host)
        )

    def authorize_admin(self, credential: Optional[str]) -> None:
        """Raise ``AuthError`` unless ``credential`` matches the admin secret."""
        result = check_admin_credential(credential, self._admin_token)
        if result.reason == AuthReason.NOT_CONFIGURED:
            raise ConfigurationError(
                "admin token is not configured on the server",
                status_code=500,
                detail={"reason": result.reason.value},
            )
        if not result.authorized:
            raise AuthError("admin token missing or invalid", reason=result.reason)

    def gate(
        self,
        requested: ToolsState,
        *,
        credential: Optional[str],
        client_host: Optional[str],
    ) -> GateDecision:
        if not requested.functions:
            return GateDecision(effective=requested, functions_authorized=False)

        if self.dev_bypass_active(client_host):
            logger.info("tool_gate_dev_bypass", client_host=client_host)
            return GateDecision(
                effective=requested, functions_authorized=True, authorized_via="dev_bypass"
            )

        result = check_admin_credential(credential, self._admin_token)
        if result.authorized:
            return GateDecision(
                effective=requested, functions_authorized=True, authorized_via="admin_token"
            )

        logger.warning(
            "tool_gate_denied",
            reason=result.reason.value,
            client_host=client_host,
        )
        if result.reason == AuthReason.NOT_CONFIGURED:
            message = "function tools requested but no admin token is configured"
        else:
            message = "function tools requested without valid authorization"
        raise AuthError(message, reason=result.reason, detail={"tool": "functionsEnabled"})
