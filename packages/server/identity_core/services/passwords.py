"""
Credential lifecycle: password policy, hashing, change, reset and set.

Reset protocol
--------------
``reset_password`` mints a JWT signed with the membership secret carrying
``token_type=reset_token``, the user id (``sub``) and username (``prn``).
The token is wrapped into a redemption link whose payload is encrypted with
the membership secret (sensitive fields first, then the whole field set) and
URL-encoded. A ``UserPasswordReset`` event carries token, link, user and
membership for external mail delivery.

``set_password`` verifies the token signature, type, subject and expiry and
then delegates to ``change_password``.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import parse_qs, quote, unquote, urlparse

import structlog

from identity_core.core.config import Settings, get_settings
from identity_core.core.events import EventEmitter
from identity_core.core.exceptions import (
    AccessDeniedError,
    FieldError,
    InvalidTokenError,
    PasswordRequiredError,
    PasswordTooShortError,
    TokenExpiredError,
    UserNotFoundError,
    ValidationFailedError,
)
from identity_core.core.security import (
    TokenService,
    calculate_password_hash,
    get_cipher,
    verify_password_hash,
)
from identity_core.services.memberships import MembershipService
from identity_shared.schemas.events import AuthEvent, EventType
from identity_shared.schemas.identity import (
    HumanUtilizer,
    ResetPasswordToken,
    SystemUtilizer,
    can_manage_credentials,
    is_system,
)
from identity_shared.schemas.memberships import Membership

if TYPE_CHECKING:
    from identity_core.services.users import UserService

log = structlog.get_logger()

RESET_TOKEN_TYPE = "reset_token"


def ensure_password(payload: Optional[dict[str, Any]], min_length: int = 6) -> str:
    """Return the payload's password or raise if it is missing or too short."""
    password = (payload or {}).get("password")
    if not isinstance(password, str) or not password.strip():
        raise PasswordRequiredError()
    if len(password) < min_length:
        raise PasswordTooShortError(min_length)
    return password


class CredentialService:
    def __init__(
        self,
        memberships: MembershipService,
        users: "UserService",
        emitter: Optional[EventEmitter] = None,
        tokens: Optional[TokenService] = None,
        settings: Optional[Settings] = None,
    ):
        self._memberships = memberships
        self._users = users
        self._emitter = emitter
        self._settings = settings or get_settings()
        self._tokens = tokens or TokenService(self._settings)

    # -- policy and hashing ----------------------------------------------------

    def ensure_password(self, payload: Optional[dict[str, Any]]) -> str:
        return ensure_password(payload, self._settings.password_min_length)

    def hash_password(self, membership: Membership, password: str) -> str:
        return calculate_password_hash(membership, password, self._settings)

    # -- change ----------------------------------------------------------------

    async def change_password(
        self,
        utilizer: HumanUtilizer | SystemUtilizer,
        membership_id: str,
        user_id: str,
        new_password: str,
    ) -> dict:
        membership = await self._memberships.require(membership_id)
        current = await self._users.get_raw(membership_id, user_id)
        if current is None:
            raise UserNotFoundError(user_id)
        password = self.ensure_password({"password": new_password})
        return await self._users.update_password_hash(
            utilizer, membership, current, self.hash_password(membership, password)
        )

    # -- reset -----------------------------------------------------------------

    async def _require_user(self, membership_id: str, email_or_username: str) -> dict:
        if not isinstance(email_or_username, str) or not email_or_username.strip():
            raise ValidationFailedError(
                [FieldError("email_or_username", "Username or email required", code="required")]
            )
        user = await self._users.find_by_username_or_email(membership_id, email_or_username)
        if user is None:
            raise UserNotFoundError(email_or_username, "username_or_email")
        return user

    def _authorize(self, utilizer: HumanUtilizer | SystemUtilizer, user: dict) -> None:
        if not can_manage_credentials(utilizer, user.get("_id")):
            log.warning("user.credentials_access_denied", utilizer=utilizer.id, user_id=user.get("_id"))
            raise AccessDeniedError(
                "Only administrators, the server or the user themself can manage this password",
                details={"utilizer": utilizer.id},
            )

    async def reset_password(
        self,
        utilizer: HumanUtilizer | SystemUtilizer,
        membership_id: str,
        email_or_username: str,
        host: Optional[str] = None,
    ) -> ResetPasswordToken:
        membership = await self._memberships.require(membership_id)
        user = await self._require_user(membership_id, email_or_username)
        self._authorize(utilizer, user)

        expires_in = timedelta(minutes=self._settings.reset_token_ttl_minutes)
        claims = {
            "jti": uuid.uuid4().hex,
            "sub": user["_id"],
            "prn": user.get("username"),
            "membership_id": membership_id,
            "token_type": RESET_TOKEN_TYPE,
        }
        token = ResetPasswordToken(
            reset_token=self._tokens.generate(claims, membership, expires_in),
            expires_in=int(expires_in.total_seconds()),
        )
        link = self.generate_reset_password_link(token, user, membership, host)

        if self._emitter is not None:
            await self._emitter.fire(AuthEvent(
                membership_id=membership_id,
                event_type=EventType.USER_PASSWORD_RESET,
                utilizer_id=utilizer.id,
                document={
                    "reset_token": token.model_dump(mode="json"),
                    "reset_password_link": link,
                    "user": self._users._present(user),
                    "membership": membership.public_dump(),
                },
            ))
        log.info("user.password_reset", membership_id=membership_id, user_id=user["_id"], utilizer=utilizer.id)
        return token

    def generate_reset_password_link(
        self,
        token: ResetPasswordToken,
        user: dict,
        membership: Membership,
        host: Optional[str] = None,
    ) -> str:
        cipher = get_cipher(membership.secret_key, self._settings)
        fields = {
            "token": cipher.encrypt(token.reset_token),
            "email_address": cipher.encrypt(user.get("email_address") or ""),
            "user_id": user["_id"],
            "membership_id": membership.id,
        }
        payload = cipher.encrypt(json.dumps(fields))
        encoded = quote(f"{membership.id}:{payload}", safe="")
        return f"https://{host or self._settings.reset_password_host}/set-password?token={encoded}"

    def read_reset_password_link(self, link: str, membership: Membership) -> dict[str, str]:
        """Decrypt a redemption link produced by ``generate_reset_password_link``."""
        values = parse_qs(urlparse(link).query).get("token")
        raw = values[0] if values else unquote(link)
        membership_id, _, payload = raw.partition(":")
        if membership_id != membership.id or not payload:
            raise InvalidTokenError("Reset link does not belong to this membership")
        cipher = get_cipher(membership.secret_key, self._settings)
        try:
            fields = json.loads(cipher.decrypt(payload))
            fields["token"] = cipher.decrypt(fields["token"])
            fields["email_address"] = cipher.decrypt(fields["email_address"])
        except (ValueError, KeyError) as exc:
            raise InvalidTokenError("Reset link could not be decrypted") from exc
        return fields

    # -- set -------------------------------------------------------------------

    async def set_password(
        self,
        utilizer: HumanUtilizer | SystemUtilizer,
        membership_id: str,
        reset_token: str,
        email_or_username: str,
        new_password: str,
    ) -> dict:
        membership = await self._memberships.require(membership_id)
        user = await self._require_user(membership_id, email_or_username)
        self._authorize(utilizer, user)

        decoded = self._tokens.try_decode(reset_token, membership)
        if decoded is None:
            raise InvalidTokenError()
        claims, valid_to = decoded
        if claims.get("token_type") != RESET_TOKEN_TYPE:
            raise InvalidTokenError("Token is not a reset token")
        if claims.get("sub") != user["_id"]:
            raise InvalidTokenError("Token was not issued for this user")
        if valid_to <= datetime.now(timezone.utc):
            log.info("user.reset_token_expired", membership_id=membership_id, user_id=user["_id"])
            raise TokenExpiredError(valid_to.isoformat())

        return await self.change_password(utilizer, membership_id, user["_id"], new_password)

    # -- check -----------------------------------------------------------------

    async def check_password(self, utilizer: HumanUtilizer | SystemUtilizer, password: str) -> bool:
        if not password:
            return False
        if is_system(utilizer):
            raise AccessDeniedError("The system identity has no password")
        membership = await self._memberships.require(utilizer.membership_id)
        user = await self._users.get_raw(membership.id, utilizer.id)
        if user is None:
            raise UserNotFoundError(utilizer.id)
        return verify_password_hash(membership, password, user.get("password_hash"))
