from .tenancy import Company, Warehouse
from .inventory import Product, WarehouseStock, Batch, StockMovement, Alert
from .sales import Customer, Sale, SaleLine, CreditPayment
from .cash import CashSession
from .documents import DocumentSequence

__all__ = [
    'Company', 'Warehouse',
    'Product', 'WarehouseStock', 'Batch', 'StockMovement', 'Alert',
    'Customer', 'Sale', 'SaleLine', 'CreditPayment',
    'CashSession',
    'DocumentSequence',
]
