from .tenancy import Tenant, Facility, Employee, TenantSetting
from .cash_sessions import CashSession, CashSessionEvent
from .sales import Sale, SaleItem, SalePayment

__all__ = [
    'Tenant', 'Facility', 'Employee', 'TenantSetting',
    'CashSession', 'CashSessionEvent',
    'Sale', 'SaleItem', 'SalePayment',
]
