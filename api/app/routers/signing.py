from fastapi import APIRouter, Depends, HTTPException
from itsdangerous import BadData
from sqlmodel import Session
from ..db import get_session
from ..schemas import SignatureSave
from ..fields import SignatureMapping
from ..instances import checklist, get_instance, load_template, save_signature
from ..utils import read_token, b64png_to_bytes

router = APIRouter()

# ---------- helpers ----------
def _load(token: str, session: Session):
    try:
        data = read_token(token)
    except BadData:
        raise HTTPException(404, "not found")
    if data.get("purpose") != "sign":
        raise HTTPException(404, "not found")
    instance = get_instance(session, data.get("instance_id"))
    row, template = load_template(session, instance.template_id)
    return instance, row, template

def _signer_role(template):
    sig = template.signature_field
    if sig is not None and isinstance(sig.mapping, SignatureMapping):
        return sig.mapping.signature_role
    return None

# ---------- routes ----------

@router.get("/{token}")
def load_signing_session(token: str, session: Session = Depends(get_session)):
    instance, row, template = _load(token, session)
    return {
        "form": {"id": instance.id, "status": instance.status, "title": row.title},
        "signature_role": _signer_role(template),
        "checklist": checklist(instance, template),
    }

@router.post("/{token}/signature")
def submit_signature(token: str, payload: SignatureSave, session: Session = Depends(get_session)):
    instance, row, template = _load(token, session)
    role = _signer_role(template)
    if role is None:
        raise HTTPException(400, "this form does not take a signature")
    if role != "participant":
        raise HTTPException(403, "this form is signed by the case worker")
    try:
        png = b64png_to_bytes(payload.signature_png)
    except ValueError as exc:
        raise HTTPException(422, str(exc))
    if not png:
        raise HTTPException(422, "signature is empty")
    instance = save_signature(session, instance, png, "signer")
    return {"ok": True, "status": instance.status}
