from pymongo import ReturnDocument
from pymongo.database import Database

from database import utcnow
from schemas import SETTINGS_KEY, Settings, SettingsUpdate


def get_settings(db: Database) -> dict:
    """Return the settings singleton, creating it with defaults on first access."""
    defaults = Settings().model_dump()
    defaults.pop("site_identifier")
    now = utcnow()
    return db["settings"].find_one_and_update(
        {"site_identifier": SETTINGS_KEY},
        {"$setOnInsert": {**defaults, "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def update_settings(db: Database, payload: SettingsUpdate) -> dict:
    get_settings(db)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "allowed_pincodes" in changes:
        seen = []
        for p in changes["allowed_pincodes"]:
            p = str(p).strip()
            if p and p not in seen:
                seen.append(p)
        changes["allowed_pincodes"] = seen
    changes["updated_at"] = utcnow()
    return db["settings"].find_one_and_update(
        {"site_identifier": SETTINGS_KEY},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
