from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, model_validator

from .base_types import CollectionId, ContextId, UserId


class ContextKind(StrEnum):
    INDIVIDUAL = "individual"
    COLLECTION = "collection"


class ContextSelector(BaseModel):
    """Which ledger a UI surface is pointed at, before the user is known."""

    model_config = ConfigDict(frozen=True)

    type: ContextKind = ContextKind.INDIVIDUAL
    collection_id: CollectionId | None = None

    @model_validator(mode="after")
    def _validate_collection(self) -> ContextSelector:
        if self.type == ContextKind.COLLECTION and not self.collection_id:
            raise ValueError("collection_id is required for a collection context")
        if self.type == ContextKind.INDIVIDUAL and self.collection_id is not None:
            raise ValueError("collection_id must be empty for an individual context")
        return self

    def for_user(self, user_id: str) -> TradingContext:
        return TradingContext(user_id=UserId(user_id), kind=self.type, collection_id=self.collection_id)


class TradingContext(BaseModel):
    """Ownership scope of one balance: a user's individual account or one collection membership."""

    model_config = ConfigDict(frozen=True)

    user_id: UserId
    kind: ContextKind
    collection_id: CollectionId | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> TradingContext:
        if not self.user_id:
            raise ValueError("user_id must be non-empty")
        if self.kind == ContextKind.COLLECTION and not self.collection_id:
            raise ValueError("collection_id is required for a collection context")
        if self.kind == ContextKind.INDIVIDUAL and self.collection_id is not None:
            raise ValueError("collection_id must be empty for an individual context")
        return self

    @classmethod
    def individual(cls, user_id: str) -> TradingContext:
        return cls(user_id=UserId(user_id), kind=ContextKind.INDIVIDUAL)

    @classmethod
    def collection(cls, user_id: str, collection_id: str) -> TradingContext:
        return cls(user_id=UserId(user_id), kind=ContextKind.COLLECTION, collection_id=CollectionId(collection_id))

    @property
    def context_id(self) -> ContextId:
        if self.kind == ContextKind.COLLECTION:
            return ContextId(f"collection:{self.collection_id}:{self.user_id}")
        return ContextId(f"individual:{self.user_id}")

    @property
    def is_collection(self) -> bool:
        return self.kind == ContextKind.COLLECTION
