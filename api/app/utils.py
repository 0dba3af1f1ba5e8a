import base64, binascii, hashlib, json
from datetime import datetime, timezone
from itsdangerous import URLSafeSerializer
from .config import SECRET_KEY

def b64png_to_bytes(data_url: str) -> bytes:
    # accepts "data:image/png;base64,....." or bare base64
    if "," in data_url:
        data_url = data_url.split(",", 1)[1]
    try:
        return base64.b64decode(data_url, validate=True)
    except binascii.Error as exc:
        raise ValueError("signature is not valid base64") from exc

def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))

def load_json(raw, default=None):
    if not raw:
        return {} if default is None else default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {} if default is None else default

def make_token(payload: dict) -> str:
    s = URLSafeSerializer(SECRET_KEY, salt="form-signing")
    return s.dumps(payload)

def read_token(token: str) -> dict:
    s = URLSafeSerializer(SECRET_KEY, salt="form-signing")
    return s.loads(token)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)
