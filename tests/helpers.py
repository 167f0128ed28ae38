# tests/helpers.py

from stringing_tracker.utils import create_access_token

ALICE = "uid-alice"
BOB = "uid-bob"
PROVIDER = "uid-provider"


def token_for(subject: str, role: str = "CUSTOMER") -> str:
    return create_access_token({"sub": subject, "role": role})

def auth_headers(subject: str, role: str = "CUSTOMER") -> dict:
    return {"Authorization": f"Bearer {token_for(subject, role)}"}

def provider_headers() -> dict:
    return auth_headers(PROVIDER, "PROVIDER")
