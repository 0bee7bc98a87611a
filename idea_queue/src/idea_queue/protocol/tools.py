"""
Tools an agent can call over a protocol session.

Every tool runs with the session's subscriber id and reads or writes only
that subscriber's data. Argument problems come back as a tool error result,
not as a protocol error, so the agent can correct itself and carry on.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import case, func, or_

from ..db import Database, Decision, Item, Subscriber, as_utc
from ..logging_conf import get_logger
from ..store import ItemStore

logger = get_logger(__name__)

MAX_LIST_LIMIT = 50
MAX_SEARCH_RESULTS = 20


class ToolError(Exception):
    """A tool call failed in a way the caller can fix."""


class UnknownToolError(Exception):
    """No tool with this name."""


# Argument models
class ListSavedItemsArgs(BaseModel):
    limit: int = 10
    category: Optional[str] = None

    @field_validator("limit")
    @classmethod
    def clamp_limit(cls, v: int) -> int:
        return max(1, min(v, MAX_LIST_LIMIT))


class SearchItemsArgs(BaseModel):
    query: str

    @field_validator("query")
    @classmethod
    def require_text(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must not be empty")
        return v.strip()


class AddItemArgs(BaseModel):
    title: str = Field(min_length=1)
    source: str = Field(min_length=1)
    summary: str = Field(min_length=1)
    url: Optional[str] = None
    category: Optional[str] = None


TOOL_CATALOG: list[dict] = [
    {
        "name": "list_saved_items",
        "description": "Get your saved items with notes, newest decision first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {
                    "type": "integer",
                    "default": 10,
                    "description": f"Max items to return (1-{MAX_LIST_LIMIT})",
                },
                "category": {"type": "string", "description": "Filter by category (optional)"},
            },
        },
    },
    {
        "name": "search_items",
        "description": "Search your saved items by title, summary, or note.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search text (case-insensitive)"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "get_preferences",
        "description": "Get your decision statistics and favourite categories.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "add_item",
        "description": "Add an item by hand. It is stored but not queued.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Item title"},
                "source": {"type": "string", "description": "Source name"},
                "summary": {"type": "string", "description": "Brief summary"},
                "url": {"type": "string", "description": "Link (optional)"},
                "category": {"type": "string", "description": "Category (optional)"},
            },
            "required": ["title", "source", "summary"],
        },
    },
]


def _saved_row(item: Item, decision: Decision) -> dict:
    row = item.to_dict()
    row["note"] = decision.note
    row["decided_at"] = as_utc(decision.decided_at).isoformat() if decision.decided_at else None
    return row


def _validation_message(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err["loc"]) or "arguments"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


class ToolExecutor:
    """Runs tools for exactly one subscriber."""

    def __init__(self, db: Database, subscriber_id: int):
        self.db = db
        self.subscriber_id = subscriber_id
        self.store = ItemStore(db)
        self._handlers = {
            "list_saved_items": (ListSavedItemsArgs, self.list_saved_items),
            "search_items": (SearchItemsArgs, self.search_items),
            "get_preferences": (None, self.get_preferences),
            "add_item": (AddItemArgs, self.add_item),
        }

    def call(self, name: str, arguments: Optional[dict]) -> Any:
        """
        Validate ``arguments`` and run tool ``name``.

        Raises ``UnknownToolError`` for an unknown name and ``ToolError``
        for invalid arguments.
        """
        if name not in self._handlers:
            raise UnknownToolError(name)
        if arguments is not None and not isinstance(arguments, dict):
            raise ToolError("arguments must be an object")

        model, handler = self._handlers[name]
        if model is None:
            return handler()
        try:
            args = model.model_validate(arguments or {})
        except ValidationError as e:
            raise ToolError(_validation_message(e))
        return handler(args)

    def _saved_query(self, session):
        return session.query(Item, Decision).join(
            Decision, Decision.item_id == Item.id
        ).filter(
            Decision.subscriber_id == self.subscriber_id,
            Decision.accepted.is_(True),
        )

    def list_saved_items(self, args: ListSavedItemsArgs) -> dict:
        with self.db.session_scope() as session:
            query = self._saved_query(session)
            if args.category:
                query = query.filter(Item.category == args.category)
            rows = query.order_by(
                Decision.decided_at.desc(), Decision.id.desc()
            ).limit(args.limit).all()
            items = [_saved_row(item, decision) for item, decision in rows]
        return {"items": items, "count": len(items)}

    def search_items(self, args: SearchItemsArgs) -> dict:
        with self.db.session_scope() as session:
            rows = self._saved_query(session).filter(or_(
                Item.title.icontains(args.query, autoescape=True),
                Item.summary.icontains(args.query, autoescape=True),
                Decision.note.icontains(args.query, autoescape=True),
            )).order_by(
                Decision.decided_at.desc(), Decision.id.desc()
            ).limit(MAX_SEARCH_RESULTS).all()
            items = [_saved_row(item, decision) for item, decision in rows]
        return {"items": items, "count": len(items), "query": args.query}

    def get_preferences(self) -> dict:
        with self.db.session_scope() as session:
            total, yes, no = session.query(
                func.count(Decision.id),
                func.coalesce(func.sum(case((Decision.accepted.is_(True), 1), else_=0)), 0),
                func.coalesce(func.sum(case((Decision.accepted.is_(False), 1), else_=0)), 0),
            ).filter(
                Decision.subscriber_id == self.subscriber_id
            ).one()

            categories = session.query(
                Item.category, func.count(Decision.id).label("count")
            ).join(
                Decision, Decision.item_id == Item.id
            ).filter(
                Decision.subscriber_id == self.subscriber_id,
                Decision.accepted.is_(True),
            ).group_by(
                Item.category
            ).order_by(
                func.count(Decision.id).desc(), Item.category
            ).all()

            subscriber = session.get(Subscriber, self.subscriber_id)
            name = subscriber.name if subscriber else None

        return {
            "stats": {"total": int(total), "yes": int(yes), "no": int(no)},
            "favorite_categories": [
                {"category": category, "count": count} for category, count in categories
            ],
            "subscriber": {"name": name},
        }

    def add_item(self, args: AddItemArgs) -> dict:
        result = self.store.add_manual_item(
            title=args.title,
            source=args.source,
            summary=args.summary,
            url=args.url,
            category=args.category,
        )
        logger.info(
            "manual_item_added",
            subscriber_id=self.subscriber_id,
            item_id=result.item_id,
            created=result.created,
        )
        message = f'Added "{args.title}".' if result.created else f'"{args.title}" already exists.'
        return {"success": True, "item_id": result.item_id, "created": result.created, "message": message}
