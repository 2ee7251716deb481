import datetime

import pytest
from jose import jwt

import config
from app.auth import _bearer_token, create_access_token, decode_access_token
from app.errors import AuthError, ConflictError, InvalidRequestError
from app.services import user_service
from app.services.user_service import UserService, hash_password, normalize_email, verify_password
from config import JWT_ALGORITHM, JWT_SECRET_KEY


@pytest.fixture
async def users(store) -> UserService:
    service = UserService(store)
    await service.ensure_indexes()
    return service


def test_password_hash_roundtrip():
    hashed = hash_password("secret123")

    assert hashed != "secret123"
    assert verify_password("secret123", hashed) is True
    assert verify_password("wrong", hashed) is False
    assert verify_password("secret123", "not-a-bcrypt-hash") is False


def test_long_passwords_are_truncated_not_rejected():
    long_password = "p" * 100
    hashed = hash_password(long_password)
    assert verify_password(long_password, hashed) is True


def test_normalize_email():
    assert normalize_email("  Student@School.EDU ") == "student@school.edu"
    assert normalize_email(None) == ""


@pytest.mark.asyncio
async def test_register_then_authenticate(users):
    user = await users.register("Student@School.edu", "secret123")

    assert user.email == "student@school.edu"
    assert user.password_hash != "secret123"

    same = await users.authenticate("student@school.edu", "secret123")
    assert same.user_id == user.user_id


@pytest.mark.parametrize(
    "email, password",
    [("", "secret123"), ("no-at-sign", "secret123"), ("a@b.c", "12345"), ("a@b.c", "")],
)
@pytest.mark.asyncio
async def test_register_rejects_bad_input(users, email, password):
    with pytest.raises(InvalidRequestError):
        await users.register(email, password)


@pytest.mark.asyncio
async def test_register_duplicate_email_conflicts(users):
    await users.register("a@b.c", "secret123")
    with pytest.raises(ConflictError):
        await users.register("A@B.C", "other-password")


@pytest.mark.parametrize("email, password", [("a@b.c", "wrong-password"), ("nobody@b.c", "secret123"), ("a@b.c", "")])
@pytest.mark.asyncio
async def test_authenticate_rejects_bad_credentials(users, email, password):
    await users.register("a@b.c", "secret123")
    with pytest.raises(AuthError):
        await users.authenticate(email, password)


@pytest.mark.asyncio
async def test_access_token_carries_user_id(users):
    user = await users.register("a@b.c", "secret123")
    token = create_access_token(user)

    assert decode_access_token(token) == user.user_id


@pytest.mark.asyncio
async def test_expired_forged_or_foreign_tokens_are_rejected(users):
    user = await users.register("a@b.c", "secret123")

    expired = create_access_token(user, expires_delta=datetime.timedelta(seconds=-10))
    assert decode_access_token(expired) is None

    forged = jwt.encode({"sub": user.user_id, "type": "access"}, "another-secret", algorithm=JWT_ALGORITHM)
    assert decode_access_token(forged) is None

    refresh = jwt.encode({"sub": user.user_id, "type": "refresh"}, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)
    assert decode_access_token(refresh) is None

    assert decode_access_token("garbage") is None


def test_bearer_header_parsing():
    assert _bearer_token("Bearer abc") == "abc"
    assert _bearer_token("bearer   abc ") == "abc"
    assert _bearer_token("Basic abc") is None
    assert _bearer_token("Bearer ") is None
    assert _bearer_token(None) is None


@pytest.mark.asyncio
async def test_unknown_email_still_runs_a_password_check(users, monkeypatch):
    await users.register("a@b.c", "secret123")
    checked = []

    def recording_verify(plain, hashed):
        checked.append(hashed)
        return False

    monkeypatch.setattr(user_service, "verify_password", recording_verify)

    with pytest.raises(AuthError):
        await users.authenticate("nobody@b.c", "secret123")
    with pytest.raises(AuthError):
        await users.authenticate("a@b.c", "secret123")

    assert len(checked) == 2
    assert checked[0] == user_service._DUMMY_PASSWORD_HASH
    assert checked[1] != user_service._DUMMY_PASSWORD_HASH


def test_jwt_secret_is_never_the_public_default_outside_dev_mode(monkeypatch):
    monkeypatch.delenv("JWT_SECRET_KEY", raising=False)
    monkeypatch.delenv("CLASSCHAT_DEV_MODE", raising=False)

    first, second = config._load_jwt_secret(), config._load_jwt_secret()
    assert first != config.DEV_SECRET
    assert first != second

    monkeypatch.setenv("CLASSCHAT_DEV_MODE", "1")
    assert config._load_jwt_secret() == config.DEV_SECRET

    monkeypatch.setenv("JWT_SECRET_KEY", "from-env")
    assert config._load_jwt_secret() == "from-env"
