from dataclasses import dataclass
from typing import Iterable

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import ForbiddenError


@dataclass(frozen=True)
class Principal:
    subject: str
    budget_ids: frozenset[int]

    def require(self, budget_id: int) -> None:
        if budget_id not in self.budget_ids:
            raise ForbiddenError("Budget not accessible")


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="budget-principal")


def issue_token(subject: str, budget_ids: Iterable[int]) -> str:
    serializer = _serializer()
    token_data = {"sub": subject, "b": sorted(set(int(b) for b in budget_ids))}
    return serializer.dumps(token_data)


def verify_token(token: str) -> Principal:
    settings = get_settings()
    serializer = _serializer()
    try:
        data = serializer.loads(token, max_age=settings.token_max_age_secs)
    except SignatureExpired as exc:
        raise ForbiddenError("Token expired") from exc
    except BadSignature as exc:
        raise ForbiddenError("Invalid token") from exc

    budget_ids = data.get("b")
    if not isinstance(budget_ids, list):
        raise ForbiddenError("Invalid token")
    return Principal(
        subject=str(data.get("sub", "")),
        budget_ids=frozenset(int(b) for b in budget_ids),
    )
