"""
auth/service.py -- Login orchestration over the auth components.

AuthService wires CredentialVerifier, AttemptLimiter, TOTPChallenge and
SessionManager into the login state machine:

  ANONYMOUS --credentials--> AUTHENTICATED                   (no second factor)
  ANONYMOUS --credentials--> AWAITING_SECOND_FACTOR          (TOTP enabled)
  AWAITING_SECOND_FACTOR --valid code--> AUTHENTICATED
  AWAITING_SECOND_FACTOR --invalid code--> AWAITING_SECOND_FACTOR
  AWAITING_SECOND_FACTOR --expiry--> ANONYMOUS
  AUTHENTICATED --logout / revoke / expiry--> ANONYMOUS

Every method takes the identity or token it acts on as an explicit argument.
There is no "current user" held anywhere in this module.

Build one per process with AuthService.build(store, settings); the API keeps
it on app.state.auth and the CLI builds its own.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth import limits
from auth.credentials import MAX_PASSWORD_BYTES, CredentialVerifier, hash_password, password_too_long, verify_password
from auth.errors import ChallengeCodeInvalid, ChallengeExpired, InvalidCredentials, StoreUnavailable
from auth.limits import AttemptLimiter
from auth.models import ClientContext, FederatedIdentity, LoginResult, Role, Session, User
from auth.network import NetworkAccessGate
from auth.roles import RoleAuthorizer
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.totp import TOTPChallenge, generate_secret, provisioning_uri
from core.config import Settings, utcnow

logger = logging.getLogger("sharedthread.auth.service")

_USERNAME_CHARS = re.compile(r"[^a-z0-9_.-]+")
_MAX_SIGNUP_ATTEMPTS = 5


def identifier_key(identifier: str) -> str:
    """Normalise a login identifier for failure counting."""
    return identifier.strip().lower()


class AuthService:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        credentials: CredentialVerifier,
        totp: TOTPChallenge,
        sessions: SessionManager,
        limiter: AttemptLimiter,
        roles: RoleAuthorizer,
        network: NetworkAccessGate,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.totp = totp
        self.sessions = sessions
        self.limiter = limiter
        self.roles = roles
        self.network = network
        self._clock = clock

    @classmethod
    def build(
        cls,
        store: AuthStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> AuthService:
        return cls(
            store,
            settings,
            credentials=CredentialVerifier(store, settings),
            totp=TOTPChallenge(store, settings, clock),
            sessions=SessionManager(store, settings, clock),
            limiter=AttemptLimiter(store, settings, clock),
            roles=RoleAuthorizer(),
            network=NetworkAccessGate(settings),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Login flow
    # ------------------------------------------------------------------

    def login(self, identifier: str, secret: str, client: ClientContext | None = None) -> LoginResult:
        """Verify credentials; issue a session or a second-factor challenge."""
        key = identifier_key(identifier)
        self.limiter.check(limits.LOGIN, key)
        try:
            verified = self.credentials.verify(identifier, secret)
        except InvalidCredentials:
            self.limiter.record_failure(limits.LOGIN, key)
            raise
        self.limiter.reset(limits.LOGIN, key)
        return self._complete_primary(verified.user, client)

    def _complete_primary(self, user: User, client: ClientContext | None) -> LoginResult:
        if user.second_factor_enabled:
            return LoginResult(user=user, pending=self.totp.begin(user))
        session = self.sessions.create(user.id, client)
        self.store.touch_last_active(user.id, self._clock())
        return LoginResult(user=user, session=session)

    def verify_second_factor(self, pending_id: str, code: str, client: ClientContext | None = None) -> LoginResult:
        """Check a one-time code against a pending challenge and issue the session."""
        pending, user = self.totp.load(pending_id)
        key = str(user.id)
        self.limiter.check(limits.TOTP, key)
        try:
            self.totp.check_code(user, code)
        except ChallengeCodeInvalid:
            self.limiter.record_failure(limits.TOTP, key)
            raise
        session = self.sessions.promote(pending, client)
        if session is None:
            raise ChallengeExpired("challenge consumed or expired before promotion")
        self.limiter.reset(limits.TOTP, key)
        self.store.touch_last_active(user.id, self._clock())
        return LoginResult(user=user, session=session)

    def login_federated(self, identity: FederatedIdentity, client: ClientContext | None = None) -> LoginResult:
        """Map a verified external identity to a local user, then continue the login flow.

        Lookup order: linked (provider, subject) -> email match (linked on the
        spot) -> new member account. The second factor still applies.
        """
        user = self.store.get_by_oauth(identity.provider, identity.external_id)
        if user is None:
            user = self.store.get_by_email(identity.email)
            if user is not None:
                if user.oauth_provider:
                    logger.warning(
                        "Federated login rejected: email already linked to another %s identity (user_id=%s)",
                        user.oauth_provider,
                        user.id,
                    )
                    raise InvalidCredentials("email linked to a different external identity")
                self.store.link_oauth(user.id, identity.provider, identity.external_id)
                logger.info("Linked %s identity to user_id=%s", identity.provider, user.id)
            else:
                user = self._create_federated_user(identity)

        reason = self.credentials.ineligibility_reason(user)
        if reason:
            logger.warning("Federated login rejected: user_id=%s %s", user.id, reason)
            raise InvalidCredentials(reason)
        return self._complete_primary(user, client)

    def _create_federated_user(self, identity: FederatedIdentity) -> User:
        base = _USERNAME_CHARS.sub("", identity.email.split("@", 1)[0].lower())[:48] or "user"
        suffix = 1
        for _ in range(_MAX_SIGNUP_ATTEMPTS):
            candidate = base if suffix == 1 else f"{base}{suffix}"
            while self.store.get_by_username(candidate) is not None:
                suffix += 1
                candidate = f"{base}{suffix}"
            new_user = User(
                username=candidate,
                email=identity.email,
                display_name=identity.display_name or candidate,
                role=Role.MEMBER,
                email_verified=True,
                oauth_provider=identity.provider,
                oauth_subject=identity.external_id,
            )
            try:
                user_id = self.store.create_user(new_user)
            except IntegrityError:
                # A concurrent first login claimed the email, or a signup took the username.
                existing = self.store.get_by_email(identity.email)
                if existing is not None:
                    return existing
                logger.info("Username %r taken during federated signup; trying next suffix", candidate)
                suffix += 1
                continue
            logger.info("Created user_id=%s from %s identity", user_id, identity.provider)
            return self.store.get_by_id(user_id)
        raise StoreUnavailable("could not allocate a username for federated signup")

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def whoami(self, session_id: str | None) -> User:
        user, _session = self.sessions.validate(session_id)
        return user

    def logout(self, session_id: str | None) -> None:
        self.sessions.revoke(session_id)

    def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        client: ClientContext | None = None,
    ) -> Session:
        """Replace the password, revoke every session, and issue a fresh one."""
        self._reauthenticate(user, current_password, "Current password is incorrect.")
        self.store.update_user(user.id, hashed_password=hash_password(new_password))
        self.sessions.revoke_all(user.id)
        logger.info("Password changed for user_id=%s; all sessions revoked", user.id)
        return self.sessions.create(user.id, client)

    def _reauthenticate(self, user: User, password: str, message: str) -> None:
        """Check the current password of a signed-in user under the reauth failure budget."""
        key = str(user.id)
        self.limiter.check(limits.REAUTH, key)
        if user.hashed_password is None or not verify_password(password, user.hashed_password):
            self.limiter.record_failure(limits.REAUTH, key)
            logger.info("Re-authentication failed for user_id=%s", user.id)
            raise InvalidCredentials("current password mismatch", message=message)
        self.limiter.reset(limits.REAUTH, key)

    # ------------------------------------------------------------------
    # Second-factor enrollment
    # ------------------------------------------------------------------

    def start_totp_enrollment(self, user: User) -> tuple[str, str]:
        """Return a fresh (secret, otpauth URI). Nothing is stored until confirmed."""
        secret = generate_secret()
        return secret, provisioning_uri(secret, user.email, self.settings.totp_issuer)

    def confirm_totp_enrollment(self, user: User, secret: str, code: str) -> None:
        """Store secret once the user proves their authenticator produces valid codes."""
        self.totp.check_code(dataclasses.replace(user, totp_secret=secret), code)
        self.store.update_user(user.id, totp_secret=secret)
        logger.info("Second factor enabled for user_id=%s", user.id)

    def disable_totp(self, user: User, password: str) -> None:
        self._reauthenticate(user, password, "Password is incorrect.")
        self.store.update_user(user.id, totp_secret=None)
        logger.info("Second factor disabled for user_id=%s", user.id)

    # ------------------------------------------------------------------
    # Accounts and housekeeping
    # ------------------------------------------------------------------

    def create_local_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: Role = Role.MEMBER,
        display_name: str = "",
        email_verified: bool = False,
        totp_secret: str | None = None,
    ) -> User:
        """Create a password account.

        Raises ValueError for a password longer than MAX_PASSWORD_BYTES and
        IntegrityError on a duplicate username/email.
        """
        if password_too_long(password):
            raise ValueError(f"password exceeds {MAX_PASSWORD_BYTES} bytes")
        user_id = self.store.create_user(
            User(
                username=username,
                email=email,
                role=role,
                display_name=display_name or username,
                hashed_password=hash_password(password),
                email_verified=email_verified,
                totp_secret=totp_secret,
            )
        )
        return self.store.get_by_id(user_id)

    def sweep(self) -> dict[str, int]:
        """Remove expired sessions, challenges, replay rows and stale failure counters."""
        now = self._clock()
        counts = {
            "sessions": self.sessions.sweep_expired(),
            "pending": self.store.delete_expired_pending(now),
            "totp_steps": self.store.delete_expired_totp_steps(now),
            "failures": self.store.delete_stale_failures(now - timedelta(seconds=self.limiter.longest_window())),
        }
        logger.info(
            "Sweep removed sessions=%d pending=%d totp_steps=%d failures=%d",
            counts["sessions"],
            counts["pending"],
            counts["totp_steps"],
            counts["failures"],
        )
        return counts
