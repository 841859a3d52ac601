import asyncio
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING
from starlette.concurrency import run_in_threadpool

from database import collection, create_document, object_id, serialize, user_collection, utcnow
from errors import BadRequestError, NotFoundError


def list_categories() -> List[Dict[str, Any]]:
    return [serialize(c) for c in user_collection("menu_category").find({"disabled": {"$ne": True}}).sort("order", ASCENDING)]


def list_items() -> List[Dict[str, Any]]:
    return [serialize(i) for i in user_collection("menu_item").find({})]


def list_specials(day: Optional[str] = None) -> List[Dict[str, Any]]:
    day = day or utcnow().date().isoformat()
    return [serialize(s) for s in user_collection("daily_specials").find({"date": day})]


async def get_menu() -> Dict[str, Any]:
    categories, items, specials = await asyncio.gather(
        run_in_threadpool(list_categories),
        run_in_threadpool(list_items),
        run_in_threadpool(list_specials),
    )
    by_id = {it["id"]: it for it in items}
    items_by_cat: Dict[str, List[Dict[str, Any]]] = {}
    for it in items:
        items_by_cat.setdefault(it.get("category_slug") or "", []).append(it)
    result = []
    for c in categories:
        result.append({
            "id": c["id"],
            "name": c.get("name"),
            "slug": c.get("slug"),
            "order": c.get("order", 0),
            "items": items_by_cat.get(c.get("slug"), []),
        })
    return {
        "categories": result,
        "specials": [
            {**s, "menu_item": by_id.get(s.get("menu_item_id"))}
            for s in specials
            if s.get("menu_item_id") in by_id
        ],
    }


def import_menu(payload) -> Dict[str, int]:
    db_categories = collection("menu_category")
    db_items = collection("menu_item")
    db_categories.delete_many({})
    db_items.delete_many({})

    item_count = 0
    now = utcnow()
    for idx, cat in enumerate(payload.categories):
        slug = cat.slug or cat.name.lower().replace(" ", "-")
        db_categories.insert_one({
            "name": cat.name,
            "slug": slug,
            "order": cat.order if cat.order is not None else idx,
            "disabled": False,
            "created_at": now,
            "updated_at": now,
        })
        for item in cat.items:
            db_items.insert_one({
                **item.model_dump(),
                "category_slug": slug,
                "created_at": now,
                "updated_at": now,
            })
            item_count += 1
    return {"categories": len(payload.categories), "items": item_count}


# ============== SPECIALS ==================
def add_special(menu_item_id: str, period: str, day: Optional[str] = None) -> Dict[str, Any]:
    oid = object_id(menu_item_id)
    menu_item = collection("menu_item").find_one({"_id": oid}) if oid else None
    if not menu_item:
        raise NotFoundError("Menu item not found")
    doc = {
        "menu_item_id": menu_item_id,
        "period": period,
        "date": day or utcnow().date().isoformat(),
        "created_at": utcnow(),
    }
    doc["_id"] = collection("daily_specials").insert_one(doc).inserted_id
    special = serialize(doc)
    special["menu_item"] = serialize(menu_item)
    return special


def remove_special(special_id: str) -> None:
    oid = object_id(special_id)
    res = collection("daily_specials").delete_one({"_id": oid}) if oid else None
    if res is None or res.deleted_count == 0:
        raise NotFoundError("Special not found")


# ============== ANNOUNCEMENTS ==================
def list_announcements(active_only: bool = False) -> List[Dict[str, Any]]:
    q = {"active": True} if active_only else {}
    return [serialize(a) for a in user_collection("announcements").find(q).sort("created_at", DESCENDING)]


def create_announcement(payload: Dict[str, Any]) -> str:
    title = str(payload.get("title") or "").strip()
    if not title:
        raise BadRequestError("Title is required")
    return create_document("announcements", {
        "title": title,
        "description": payload.get("description") or None,
        "link": payload.get("link") or None,
        "image_url": payload.get("image_url") or None,
        "active": bool(payload.get("active", True)),
    })


def delete_announcement(announcement_id: Optional[str]) -> None:
    if not announcement_id:
        raise BadRequestError("Announcement id is required")
    oid = object_id(announcement_id)
    res = collection("announcements").delete_one({"_id": oid}) if oid else None
    if res is None or res.deleted_count == 0:
        raise NotFoundError("Announcement not found")
