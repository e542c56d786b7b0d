from sqlalchemy.orm import Session
from compliancehub.models import Setting

EDITABLE_KEYS = ("hris_api_url", "hris_api_key", "webhook_url")
SECRET_KEYS = {"hris_api_key"}


def get_setting(db: Session, key: str, default: str = "") -> str:
    row = db.get(Setting, key)
    return row.value if row and row.value else default


def set_setting(db: Session, key: str, value: str) -> None:
    if key not in EDITABLE_KEYS:
        raise KeyError(key)
    row = db.get(Setting, key)
    if row is None:
        db.add(Setting(key=key, value=value))
    else:
        row.value = value
    db.commit()


def list_settings(db: Session) -> dict[str, str]:
    values = {}
    for key in EDITABLE_KEYS:
        value = get_setting(db, key)
        values[key] = "********" if key in SECRET_KEYS and value else value
    return values
