import secrets
import string
import time
from datetime import datetime, timezone

CODE_ALPHABET = string.ascii_uppercase + string.digits


def now_ts() -> float:
    return time.time()

def now() -> datetime:
    return datetime.now(timezone.utc)

def generate_quiz_code(length: int = 6) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))

def player_id_for(display_name: str) -> str:
    return display_name.strip().lower().replace(" ", "-")
