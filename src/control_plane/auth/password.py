"""Password hashing with passlib's bcrypt scheme."""

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Check a password; accounts without a hash (invite-only) never match."""
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)
