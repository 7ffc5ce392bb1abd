"""
Account flows: registration, login, token refresh and the OTP password
reset (request -> email -> verify -> reset-scoped token -> change password),
plus admin-managed moderator accounts.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Sequence, Tuple

from config import Settings
from database import utcnow
from errors import DependencyFailure, Forbidden, InvalidOtp, NotFound, Unauthorized, ValidationFailed
from mailer import Mailer, render_moderator_welcome_email, render_otp_email, render_welcome_email
from repositories import UserRepository
from schemas import ROLE_ADMIN, ROLE_MODERATOR, User
from security import SCOPE_ACCESS, SCOPE_PASSWORD_RESET, PasswordHasher, TokenClaims, TokenIssuer

logger = logging.getLogger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

OTP_MIN = 100000
OTP_MAX = 999999


def password_policy_errors(password: str, label: str = "Password") -> List[str]:
    """Every rule the password breaks, not just the first one."""
    failures = []
    if len(password) < PASSWORD_MIN_LENGTH:
        failures.append(f"{label} must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(password) > PASSWORD_MAX_LENGTH:
        failures.append(f"{label} must not exceed {PASSWORD_MAX_LENGTH} characters")
    if not any(c.islower() for c in password):
        failures.append(f"{label} must contain at least one lowercase letter")
    if not any(c.isupper() for c in password):
        failures.append(f"{label} must contain at least one uppercase letter")
    if not any(c.isdigit() for c in password):
        failures.append(f"{label} must contain at least one number")
    return failures


def validate_password(password: str, field: str = "password", label: str = "Password") -> None:
    failures = password_policy_errors(password, label)
    if failures:
        raise ValidationFailed(errors=[{"field": field, "message": m} for m in failures])


def generate_otp() -> str:
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountService:
    def __init__(
        self,
        users: UserRepository,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        mailer: Mailer,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.users = users
        self.hasher = hasher
        self.tokens = tokens
        self.mailer = mailer
        self.settings = settings
        self.clock = clock

    def issue_token(self, user: User, scope: str = SCOPE_ACCESS) -> str:
        return self.tokens.issue(user.id, {"email": user.email, "scope": scope, "ver": user.token_version})

    def authenticate(self, claims: TokenClaims, allowed_scopes: Sequence[str]) -> User:
        if claims.scope not in allowed_scopes:
            raise Unauthorized("Token is not valid for this action")
        user = self.users.find_by_id(claims.sub)
        if user is None:
            raise Unauthorized("Failed to authenticate token")
        if user.token_version != claims.ver:
            raise Unauthorized("Token has been revoked")
        return user

    # Registration and login

    def register(self, name: str, email: str, password: str) -> Tuple[str, User]:
        email = normalize_email(email)
        validate_password(password)
        if self.users.find_by_email(email) is not None:
            raise ValidationFailed("User already exists")

        user_id = self.users.create(User(name=name.strip(), email=email, password_hash=self.hasher.hash(password)))
        user = self.users.find_by_id(user_id)
        logger.info("Registered user %s", email)

        try:
            self.mailer.send(
                to=email,
                subject=f"Welcome to {self.settings.COMPANY_NAME}",
                text=f"Hello {user.name}, welcome to our {self.settings.COMPANY_NAME} platform!",
                html=render_welcome_email(
                    user_name=user.name,
                    user_email=email,
                    company_name=self.settings.COMPANY_NAME,
                    support_email=self.settings.SUPPORT_EMAIL,
                ),
            )
        except DependencyFailure as exc:
            logger.warning("Welcome email to %s not delivered: %s", email, exc.message)

        return self.issue_token(user), user

    def login(self, email: str, password: str) -> Tuple[str, User]:
        user = self.users.find_by_email(normalize_email(email))
        if user is None:
            raise NotFound("User not found")
        if not self.hasher.verify(password, user.password_hash):
            raise Unauthorized("Invalid credentials")
        return self.issue_token(user), user

    def refresh(self, user: User) -> str:
        return self.issue_token(user)

    # Password reset

    def request_otp(self, email: str) -> bool:
        """Issue and email a fresh OTP. Returns False if nothing was sent."""
        email = normalize_email(email)
        user = self.users.find_by_email(email)
        if user is None:
            if self.settings.OTP_CONCEAL_UNKNOWN_EMAIL:
                logger.info("OTP requested for unknown email %s", email)
                return False
            raise NotFound("User not found")

        now = self.clock()
        otp = generate_otp()
        expiry_minutes = self.settings.OTP_EXPIRE_MINUTES
        if not self.users.atomic_update_otp(user.id, otp, now + timedelta(minutes=expiry_minutes), now):
            raise NotFound("User not found")
        logger.info("OTP issued for %s", email)

        try:
            self.mailer.send(
                to=user.email,
                subject="Password Reset Request",
                text=f"Your OTP for password reset is: {otp}",
                html=render_otp_email(
                    email=user.email,
                    otp=otp,
                    user_name=user.name,
                    purpose="password reset",
                    expiry_minutes=expiry_minutes,
                    company_name=self.settings.COMPANY_NAME,
                    support_email=self.settings.SUPPORT_EMAIL,
                ),
            )
        except DependencyFailure as exc:
            logger.error("OTP dispatch failed for %s: %s", email, exc.message)
            raise
        return True

    def verify_otp(self, email: str, otp: str) -> str:
        user = self.users.find_by_email_and_otp(normalize_email(email), otp.strip(), self.clock())
        if user is None:
            logger.info("Invalid OTP attempt for %s", email)
            raise InvalidOtp()
        return self.issue_token(user, scope=SCOPE_PASSWORD_RESET)

    def change_password(self, user_id: str, new_password: str) -> User:
        validate_password(new_password, field="newPassword", label="New password")
        user = self.users.update_password(user_id, self.hasher.hash(new_password), self.clock())
        if user is None:
            raise NotFound("User not found")
        logger.info("Password changed for %s", user.email)
        return user

    # Moderators

    @staticmethod
    def require_admin(user: User) -> User:
        if user.role != ROLE_ADMIN:
            raise Forbidden("Access denied: Admins only")
        return user

    def create_moderator(self, admin: User, name: str, email: str, password: str) -> User:
        email = normalize_email(email)
        validate_password(password)
        if self.users.find_by_email(email) is not None:
            raise ValidationFailed("User already exists")

        user_id = self.users.create(
            User(
                name=name.strip(),
                email=email,
                password_hash=self.hasher.hash(password),
                role=ROLE_MODERATOR,
                created_by=admin.id,
            )
        )
        moderator = self.users.find_by_id(user_id)
        logger.info("Moderator %s created by %s", email, admin.email)

        try:
            self.mailer.send(
                to=email,
                subject=f"Welcome to {self.settings.COMPANY_NAME} as Moderator",
                text=(
                    f"Hello {moderator.name}, you have been assigned as a moderator "
                    f"on our {self.settings.COMPANY_NAME} platform!"
                ),
                html=render_moderator_welcome_email(
                    moderator_name=moderator.name,
                    moderator_email=email,
                    admin_panel_url=self.settings.ADMIN_PANEL_URL,
                    assigned_by=admin.name,
                    company_name=self.settings.COMPANY_NAME,
                    support_email=self.settings.SUPPORT_EMAIL,
                ),
            )
        except DependencyFailure as exc:
            logger.warning("Moderator welcome email to %s not delivered: %s", email, exc.message)
        return moderator

    def list_moderators(self) -> List[User]:
        return self.users.list_by_role(ROLE_MODERATOR)

    def set_moderator_deleted(self, email: str, deleted: bool) -> User:
        """Soft-delete or restore a moderator; deleted accounts lose every session."""
        moderator = self.users.set_deleted(normalize_email(email), ROLE_MODERATOR, deleted, self.clock())
        if moderator is None:
            raise NotFound("Moderator not found")
        logger.info("Moderator %s %s", moderator.email, "deleted" if deleted else "restored")
        return moderator
