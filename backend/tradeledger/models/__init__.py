from .inventory import Product, StockMovement, Vendor
from .customers import Customer, CustomerRewardAccount, CustomerRewardTransaction
from .ledger import LedgerEntry, PartyPayment
from .purchasing import PurchaseOrder, PurchaseOrderLine
from .credit_memos import CreditMemo, CreditMemoLine
from .shipping import Shipment, ShipmentLine
from .sales import Sale, SaleLine, SalePayment, Order, OrderLine
from .returns import SaleReturn, SaleReturnLine
from .expenses import Expense
from .documents import DocumentSequence

__all__ = [
    'Product', 'StockMovement', 'Vendor',
    'Customer', 'CustomerRewardAccount', 'CustomerRewardTransaction',
    'LedgerEntry', 'PartyPayment',
    'PurchaseOrder', 'PurchaseOrderLine',
    'CreditMemo', 'CreditMemoLine',
    'Shipment', 'ShipmentLine',
    'Sale', 'SaleLine', 'SalePayment', 'Order', 'OrderLine',
    'SaleReturn', 'SaleReturnLine',
    'Expense',
    'DocumentSequence',
]
