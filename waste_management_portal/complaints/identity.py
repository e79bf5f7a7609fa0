import logging
import uuid
from dataclasses import dataclass

from django.conf import settings
from django.contrib.auth import authenticate
from django.contrib.auth.password_validation import validate_password
from django.core import signing
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction

from .exceptions import Conflict, InvalidCredentials, ValidationError
from .models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Subject:
    """The authenticated actor behind a request."""

    id: uuid.UUID
    role: str
    name: str = ""

    @classmethod
    def from_user(cls, user):
        return cls(id=user.pk, role=user.role, name=user.full_name)


class IdentityProvider:
    """Registers users, checks credentials and issues signed bearer tokens."""

    def __init__(self, salt=None, max_age=None):
        self.salt = salt or settings.AUTH_TOKEN_SALT
        self.max_age = max_age if max_age is not None else settings.AUTH_TOKEN_MAX_AGE_SECONDS

    def register(self, email, password, name, role=User.Role.CITIZEN, phone=""):
        email = (email or "").strip().lower()
        if role not in User.Role.values:
            raise ValidationError(details={"role": ["Select a valid role."]})
        if User.objects.filter(email__iexact=email).exists():
            raise Conflict("An account with this email already exists.")

        candidate = User(email=email, full_name=name, role=role, phone=phone or "")
        try:
            validate_password(password, user=candidate)
        except DjangoValidationError as exc:
            raise ValidationError(details={"password": list(exc.messages)}) from exc

        try:
            with transaction.atomic():
                user = User.objects.create_user(
                    email=email,
                    password=password,
                    full_name=name,
                    role=role,
                    phone=phone or "",
                )
        except IntegrityError as exc:
            raise Conflict("An account with this email already exists.") from exc

        logger.info("User registered", extra={"user_id": str(user.pk), "role": user.role})
        return user, self.issue_token(user)

    def authenticate(self, email, password):
        user = authenticate(username=(email or "").strip().lower(), password=password)
        if user is None:
            logger.warning("Failed login attempt")
            raise InvalidCredentials()
        return user, self.issue_token(user)

    def issue_token(self, user) -> str:
        return signing.dumps({"sub": str(user.pk), "role": user.role}, salt=self.salt)

    def verify(self, token) -> Subject:
        if not token:
            raise InvalidCredentials("Access token required.")
        try:
            payload = signing.loads(token, salt=self.salt, max_age=self.max_age)
        except signing.SignatureExpired:
            raise InvalidCredentials("Token has expired.")
        except signing.BadSignature:
            raise InvalidCredentials("Invalid token.")

        user = User.objects.filter(pk=payload.get("sub"), is_active=True).first()
        if user is None or user.role != payload.get("role"):
            raise InvalidCredentials("Invalid token.")
        return Subject.from_user(user)
