from sqlmodel import Session, select
from .models import Event
from .utils import canonical_json, sha256_bytes

def append_event(session: Session, instance_id: int, actor: str, type_: str, meta: dict, commit: bool = True):
    last = session.exec(
        select(Event).where(Event.instance_id == instance_id).order_by(Event.id.desc())
    ).first()
    prev_hash = last.hash if last else "0" * 64
    payload = {"actor": actor, "type": type_, "meta": meta}
    event = Event(
        instance_id=instance_id,
        actor=actor,
        type=type_,
        meta_json=canonical_json(payload),
        prev_hash=prev_hash,
    )
    event.hash = sha256_bytes((prev_hash + event.meta_json).encode())
    session.add(event)
    if commit:
        session.commit()
    else:
        session.flush()
    return event

def verify_chain(session: Session, instance_id: int) -> bool:
    events = session.exec(
        select(Event).where(Event.instance_id == instance_id).order_by(Event.id)
    ).all()
    prev_hash = "0" * 64
    for event in events:
        if event.prev_hash != prev_hash:
            return False
        if event.hash != sha256_bytes((prev_hash + event.meta_json).encode()):
            return False
        prev_hash = event.hash
    return True
