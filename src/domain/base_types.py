from typing import NewType
from uuid import UUID

UserId = NewType("UserId", str)
CollectionId = NewType("CollectionId", str)
ContextId = NewType("ContextId", str)
TransactionId = NewType("TransactionId", UUID)
