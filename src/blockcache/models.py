from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


class BatchValidationError(ValueError):
    """Raised when a raw batch cannot be normalized into a Batch."""

    def __init__(self, message: str, *, field_name: str, position: int | None = None) -> None:
        location = f" (batch #{position})" if position is not None else ""
        super().__init__(f"{message}: {field_name}{location}")
        self.field_name = field_name
        self.position = position


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _first_present(*candidates: Any) -> Any:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


@dataclass(frozen=True)
class BlockHeader:
    height: int
    hash: str | None = None
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"height": self.height, "hash": self.hash, "timestamp": self.timestamp}


@dataclass(frozen=True)
class Log:
    address: str
    data: str
    topics: tuple[str, ...]
    transaction_hash: str
    block_number: int
    log_index: int = 0
    transaction_index: int = 0
    block_hash: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "topics", tuple(self.topics))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "address": self.address,
            "data": self.data,
            "topics": list(self.topics),
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "logIndex": self.log_index,
            "transactionIndex": self.transaction_index,
        }
        if self.block_hash is not None:
            data["blockHash"] = self.block_hash
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, default_block: int = 0) -> "Log":
        return cls(
            address=data.get("address"),
            data=data.get("data"),
            topics=tuple(data.get("topics") or ()),
            transaction_hash=data.get("transactionHash"),
            block_number=_first_present(data.get("blockNumber"), default_block),
            log_index=_first_present(data.get("logIndex"), 0),
            transaction_index=_first_present(data.get("transactionIndex"), 0),
            block_hash=data.get("blockHash"),
        )


@dataclass(frozen=True)
class Transaction:
    hash: str | None = None
    from_: str | None = None
    to: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {"hash": self.hash, "from": self.from_, "to": self.to}
        return {key: value for key, value in data.items() if value is not None}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Transaction":
        return cls(hash=data.get("hash"), from_=data.get("from"), to=data.get("to"))


@dataclass(frozen=True)
class Batch:
    """One processing step's worth of input: a block header with its logs and transactions."""

    header: BlockHeader
    logs: tuple[Log, ...] = field(default_factory=tuple)
    transactions: tuple[Transaction, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "logs", tuple(self.logs))
        object.__setattr__(self, "transactions", tuple(self.transactions))

    @property
    def height(self) -> int:
        return self.header.height

    def to_dict(self) -> dict[str, Any]:
        return {
            "header": self.header.to_dict(),
            "logs": [log.to_dict() for log in self.logs],
            "transactions": [tx.to_dict() for tx in self.transactions],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Batch":
        return normalize_batch(data)


def _mapping_items(value: Any, field_name: str, position: int | None) -> list[Mapping[str, Any]]:
    if not value:
        return []
    if not isinstance(value, (list, tuple)):
        raise BatchValidationError(f"{field_name} must be a list", field_name=field_name, position=position)
    for idx, item in enumerate(value):
        if not isinstance(item, Mapping):
            raise BatchValidationError(
                f"{field_name} entries must be mappings", field_name=f"{field_name}[{idx}]", position=position
            )
    return list(value)


def normalize_batch(raw: Batch | Mapping[str, Any], *, position: int | None = None) -> Batch:
    """
    Normalize a raw pipeline batch into a Batch.

    Field precedence:
    - height: header.height, header.number, number, height
    - hash: header.hash, then blockHash of the first log
    - timestamp: header.timestamp, timestamp, 0
    - log blockNumber falls back to the block height
    """
    if isinstance(raw, Batch):
        return raw
    if not isinstance(raw, Mapping):
        raise BatchValidationError("batch must be a mapping", field_name="<batch>", position=position)

    header = raw.get("header") or {}
    if not isinstance(header, Mapping):
        raise BatchValidationError("header must be a mapping", field_name="header", position=position)

    height = _first_present(header.get("height"), header.get("number"), raw.get("number"), raw.get("height"))
    if height is None:
        raise BatchValidationError("missing block height", field_name="header.height", position=position)
    if not _is_int(height):
        raise BatchValidationError("block height must be an integer", field_name="header.height", position=position)

    logs = tuple(
        Log.from_dict(item, default_block=height)
        for item in _mapping_items(raw.get("logs"), "logs", position)
    )
    first_log_hash = logs[0].block_hash if logs else None
    timestamp = _first_present(header.get("timestamp"), raw.get("timestamp"), 0)

    return Batch(
        header=BlockHeader(
            height=height,
            hash=_first_present(header.get("hash"), first_log_hash),
            timestamp=timestamp,
        ),
        logs=logs,
        transactions=tuple(
            Transaction.from_dict(item) for item in _mapping_items(raw.get("transactions"), "transactions", position)
        ),
    )


def normalize_batches(raw_batches: list[Any] | tuple[Any, ...]) -> list[Batch]:
    return [normalize_batch(raw, position=idx) for idx, raw in enumerate(raw_batches)]
