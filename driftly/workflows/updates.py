# /driftly/workflows/updates.py

"""
Builders for targeted MongoDB update documents.

Every state change the engine makes to a contact or a flow is expressed as one
update document ($set / $unset / $inc / $push / $addToSet / $pull) so it can be
applied atomically to a single document, or handed back to the caller untouched
during a dry run.
"""

from typing import Any, Dict, Iterable, List


class UpdateBuilder:
    def __init__(self):
        self._set: Dict[str, Any] = {}
        self._unset: Dict[str, str] = {}
        self._inc: Dict[str, int] = {}
        self._push: Dict[str, List[Any]] = {}
        self._add_to_set: Dict[str, List[Any]] = {}
        self._pull: Dict[str, List[Any]] = {}

    def set(self, field: str, value: Any) -> "UpdateBuilder":
        self._unset.pop(field, None)
        self._set[field] = value
        return self

    def set_many(self, values: Dict[str, Any]) -> "UpdateBuilder":
        for field, value in values.items():
            self.set(field, value)
        return self

    def unset(self, *fields: str) -> "UpdateBuilder":
        for field in fields:
            self._set.pop(field, None)
            self._unset[field] = ""
        return self

    def inc(self, field: str, amount: int = 1) -> "UpdateBuilder":
        self._inc[field] = self._inc.get(field, 0) + amount
        return self

    def push(self, field: str, *values: Any) -> "UpdateBuilder":
        self._push.setdefault(field, []).extend(values)
        return self

    def add_to_set(self, field: str, values: Iterable[Any]) -> "UpdateBuilder":
        bucket = self._add_to_set.setdefault(field, [])
        bucket.extend(v for v in values if v not in bucket)
        return self

    def pull(self, field: str, values: Iterable[Any]) -> "UpdateBuilder":
        self._pull.setdefault(field, []).extend(values)
        return self

    def get(self, field: str, default: Any = None) -> Any:
        return self._set.get(field, default)

    def pushed(self, field: str) -> List[Any]:
        return list(self._push.get(field, []))

    def __bool__(self) -> bool:
        return any((self._set, self._unset, self._inc, self._push, self._add_to_set, self._pull))

    def to_mongo(self) -> Dict[str, Any]:
        update: Dict[str, Any] = {}
        if self._set:
            update["$set"] = dict(self._set)
        if self._unset:
            update["$unset"] = dict(self._unset)
        if self._inc:
            update["$inc"] = dict(self._inc)
        if self._push:
            update["$push"] = {field: {"$each": list(values)} for field, values in self._push.items()}
        if self._add_to_set:
            update["$addToSet"] = {field: {"$each": list(values)} for field, values in self._add_to_set.items()}
        if self._pull:
            update["$pull"] = {field: {"$in": list(values)} for field, values in self._pull.items()}
        return update
