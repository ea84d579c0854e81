# Stock ledger domain module
from pharmstock.domain.stock.models import (
    BatchStatus,
    Department,
    Drug,
    StockBatch,
    StockCard,
    StockTransaction,
    TransactionType,
    Warehouse,
    WarehouseType,
)

__all__ = [
    "BatchStatus",
    "Department",
    "Drug",
    "StockBatch",
    "StockCard",
    "StockTransaction",
    "TransactionType",
    "Warehouse",
    "WarehouseType",
]
