"""
Generic resource handlers

Every catalog-style collection (categories, brands, products, coupons...)
shares the same list/get/create/update/delete behaviour. A ``Resource``
describes what differs between them; ``ResourceFactory`` implements the
operations once, and ``register_crud`` wires the standard routes.

List requests understand these query parameters:

    page=2&limit=20            pagination (limit is clamped to MAX_PAGE_LIMIT)
    sort=-price,title          comma separated, "-" prefix sorts descending
    fields=title,price         projection; "id" is always returned
    keyword=phone              case-insensitive match on the searchable fields
    price[gte]=10&brand=<id>   equality and gt/gte/lt/lte/ne on filterable fields
"""

import logging
import math
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type

from bson import ObjectId
from fastapi import APIRouter, Request, Response
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, ReturnDocument

import config
from database import get_db, now, to_object_id
from errors import NotFound, ValidationFailed
from presenters import present

logger = logging.getLogger(__name__)

RESERVED_PARAMS = {"page", "limit", "sort", "fields", "keyword"}
FILTER_OPERATORS = {"gt", "gte", "lt", "lte", "ne"}
_OPERATOR_KEY = re.compile(r"^(\w+)\[(\w+)\]$")
_FIELD_NAME = re.compile(r"^[A-Za-z_][\w.]*$")


def parse_bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ValueError(value)


def parse_object_id(value: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise ValueError(value)
    return ObjectId(value)


def slugify(value: str) -> str:
    ascii_name = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]+", "-", ascii_name.lower()).strip("-")


@dataclass
class Resource:
    name: str
    collection: str
    create_model: Optional[Type[BaseModel]] = None
    update_model: Optional[Type[BaseModel]] = None
    search_fields: Tuple[str, ...] = ()
    # field -> callable that coerces a query-string value
    filters: Dict[str, Callable[[str], Any]] = field(default_factory=dict)
    # field -> collection the stored ObjectId(s) must resolve in
    references: Dict[str, str] = field(default_factory=dict)
    image_fields: Tuple[str, ...] = ()
    image_folder: str = ""
    slug_from: Optional[str] = None
    # (db, changes, existing) -> None; may raise ApiError
    before_write: Optional[Callable[[Any, Dict[str, Any], Optional[Dict[str, Any]]], None]] = None
    # (db, document) -> None; runs after insert, update and delete
    after_write: Optional[Callable[[Any, Dict[str, Any]], None]] = None
    # (db, document, representation) -> None
    expand: Optional[Callable[[Any, Dict[str, Any], Dict[str, Any]], None]] = None
    # also expand every document of a list response
    expand_lists: bool = False


@dataclass
class Page:
    number: int
    limit: int

    @property
    def skip(self) -> int:
        return (self.number - 1) * self.limit


def parse_page(params: Mapping[str, str]) -> Page:
    errors: Dict[str, List[str]] = {}
    try:
        number = int(params.get("page", 1))
        if number < 1:
            raise ValueError
    except ValueError:
        errors["page"] = ["page must be a positive integer"]
        number = 1
    try:
        limit = int(params.get("limit", config.DEFAULT_PAGE_LIMIT))
        if limit < 1:
            raise ValueError
    except ValueError:
        errors["limit"] = ["limit must be a positive integer"]
        limit = config.DEFAULT_PAGE_LIMIT
    if errors:
        raise ValidationFailed(errors)
    return Page(number=number, limit=min(limit, config.MAX_PAGE_LIMIT))


def parse_sort(value: Optional[str]) -> List[Tuple[str, int]]:
    order_by = []
    for part in (value or "-created_at").split(","):
        part = part.strip()
        if not part:
            continue
        direction = DESCENDING if part.startswith("-") else ASCENDING
        name = part.lstrip("-+")
        if not _FIELD_NAME.match(name):
            raise ValidationFailed.single("sort", f"Invalid sort field: {name}")
        order_by.append(("_id" if name == "id" else name, direction))
    return order_by or [("created_at", DESCENDING)]


def parse_fields(value: Optional[str]) -> Optional[Dict[str, int]]:
    if not value:
        return None
    projection = {}
    for name in value.split(","):
        name = name.strip()
        if not name or name == "id":
            continue
        if not _FIELD_NAME.match(name):
            raise ValidationFailed.single("fields", f"Invalid field: {name}")
        projection[name] = 1
    return projection or None


def build_filter(params: Mapping[str, str], resource: Resource) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    errors: Dict[str, List[str]] = {}
    for key, raw in params.items():
        if key in RESERVED_PARAMS:
            continue
        match = _OPERATOR_KEY.match(key)
        name, op = (match.group(1), match.group(2)) if match else (key, None)
        coerce = resource.filters.get(name)
        if coerce is None:
            # Unknown keys are ignored so clients can pass cache-busters etc.
            continue
        if op is not None and op not in FILTER_OPERATORS:
            errors.setdefault(name, []).append(f"Unsupported operator: {op}")
            continue
        try:
            value = coerce(raw)
        except ValueError:
            errors.setdefault(name, []).append(f"Invalid value for {name}: {raw}")
            continue
        if op is None:
            query[name] = value
        else:
            condition = query.get(name)
            if not isinstance(condition, dict):
                condition = {}
            condition[f"${op}"] = value
            query[name] = condition
    if errors:
        raise ValidationFailed(errors)

    keyword = params.get("keyword")
    if keyword and resource.search_fields:
        pattern = re.escape(keyword)
        query["$or"] = [{f: {"$regex": pattern, "$options": "i"}} for f in resource.search_fields]
    return query


class ResourceFactory:
    def __init__(self, resource: Resource):
        self.resource = resource

    @property
    def collection(self):
        return get_db()[self.resource.collection]

    def not_found(self, doc_id: Any) -> NotFound:
        return NotFound(f"No {self.resource.name} for this id {doc_id}")

    def present(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return present(doc, self.resource.image_fields, self.resource.image_folder)

    def list(self, params: Mapping[str, str], base_filter: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        page = parse_page(params)
        sort = parse_sort(params.get("sort"))
        projection = parse_fields(params.get("fields"))
        query = build_filter(params, self.resource)
        if base_filter:
            query.update(base_filter)

        total = self.collection.count_documents(query)
        cursor = self.collection.find(query, projection).sort(sort).skip(page.skip).limit(page.limit)
        data = []
        for doc in cursor:
            out = self.present(doc)
            if self.resource.expand and self.resource.expand_lists:
                self.resource.expand(get_db(), doc, out)
            data.append(out)

        pagination = {
            "currentPage": page.number,
            "limit": page.limit,
            "numberOfPages": math.ceil(total / page.limit),
            "totalDocuments": total,
        }
        if page.number * page.limit < total:
            pagination["next"] = page.number + 1
        if page.number > 1:
            pagination["prev"] = page.number - 1
        return {"status": "success", "results": len(data), "paginationResult": pagination, "data": data}

    def find(self, doc_id: Any, extra_filter: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = {"_id": to_object_id(doc_id)}
        if extra_filter:
            query.update(extra_filter)
        doc = self.collection.find_one(query)
        if not doc:
            raise self.not_found(doc_id)
        return doc

    def get(self, doc_id: Any, extra_filter: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        doc = self.find(doc_id, extra_filter)
        out = self.present(doc)
        if self.resource.expand:
            self.resource.expand(get_db(), doc, out)
        return {"status": "success", "data": out}

    def _resolve_references(self, db, changes: Dict[str, Any]) -> None:
        errors: Dict[str, List[str]] = {}
        for name, target in self.resource.references.items():
            if name not in changes or changes[name] is None:
                continue
            value = changes[name]
            raw_ids = value if isinstance(value, list) else [value]
            ids = []
            for raw in raw_ids:
                if isinstance(raw, ObjectId) or ObjectId.is_valid(raw):
                    ids.append(ObjectId(raw))
                else:
                    errors.setdefault(name, []).append(f"Invalid {name} id format: {raw}")
            if name in errors:
                continue
            found = {d["_id"] for d in db[target].find({"_id": {"$in": ids}}, {"_id": 1})}
            for oid in ids:
                if oid not in found:
                    errors.setdefault(name, []).append(f"No {target} for this id {oid}")
            changes[name] = ids if isinstance(value, list) else ids[0]
        if errors:
            raise ValidationFailed(errors)

    def _prepare(self, db, changes: Dict[str, Any], existing: Optional[Dict[str, Any]]) -> None:
        self._resolve_references(db, changes)
        source = self.resource.slug_from
        if source and changes.get(source):
            changes["slug"] = slugify(changes[source])
        if self.resource.before_write:
            self.resource.before_write(db, changes, existing)

    def insert(self, data: Dict[str, Any]) -> Dict[str, Any]:
        db = get_db()
        self._prepare(db, data, None)
        stamp = now()
        data["created_at"] = stamp
        data["updated_at"] = stamp
        result = self.collection.insert_one(data)
        data["_id"] = result.inserted_id
        if self.resource.after_write:
            self.resource.after_write(db, data)
        logger.info("Created %s %s", self.resource.name, result.inserted_id)
        return data

    def create(self, payload: BaseModel, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = payload.model_dump()
        if extra:
            data.update(extra)
        doc = self.insert(data)
        return {"status": "success", "data": self.present(doc)}

    def apply(self, doc_id: Any, changes: Dict[str, Any], extra_filter: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        db = get_db()
        existing = self.find(doc_id, extra_filter)
        self._prepare(db, changes, existing)
        changes["updated_at"] = now()
        doc = self.collection.find_one_and_update(
            {"_id": existing["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
        if not doc:
            raise self.not_found(doc_id)
        if self.resource.after_write:
            self.resource.after_write(db, doc)
        return doc

    def update(self, doc_id: Any, payload: BaseModel, extra_filter: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        doc = self.apply(doc_id, payload.model_dump(exclude_unset=True), extra_filter)
        return {"status": "success", "data": self.present(doc)}

    def delete(self, doc_id: Any, extra_filter: Optional[Dict[str, Any]] = None) -> None:
        query = {"_id": to_object_id(doc_id)}
        if extra_filter:
            query.update(extra_filter)
        doc = self.collection.find_one_and_delete(query)
        if not doc:
            raise self.not_found(doc_id)
        if self.resource.after_write:
            self.resource.after_write(get_db(), doc)
        logger.info("Deleted %s %s", self.resource.name, doc_id)


def register_crud(router: APIRouter, path: str, factory: ResourceFactory, *, with_create: bool = True, with_update: bool = True) -> None:
    """Attach list/get/create/update/delete endpoints for ``factory`` under ``path``."""
    resource = factory.resource
    create_model = resource.create_model
    update_model = resource.update_model

    def list_documents(request: Request):
        return factory.list(request.query_params)

    def get_document(id: str):
        return factory.get(id)

    def create_document(payload: create_model):
        return factory.create(payload)

    def update_document(id: str, payload: update_model):
        return factory.update(id, payload)

    def delete_document(id: str):
        factory.delete(id)
        return Response(status_code=204)

    router.add_api_route(path, list_documents, methods=["GET"], name=f"list_{resource.name}")
    if with_create:
        router.add_api_route(path, create_document, methods=["POST"], status_code=201, name=f"create_{resource.name}")
    router.add_api_route(f"{path}/{{id}}", get_document, methods=["GET"], name=f"get_{resource.name}")
    if with_update:
        router.add_api_route(f"{path}/{{id}}", update_document, methods=["PUT"], name=f"update_{resource.name}")
    router.add_api_route(f"{path}/{{id}}", delete_document, methods=["DELETE"], status_code=204, name=f"delete_{resource.name}")
