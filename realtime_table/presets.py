"""
Query descriptors used by the back-office feature pages, by table name.
"""
from typing import Any, Dict

from realtime_table.types.query_descriptor import QueryDescriptor


def _newest_first(column: str = "created_at", **extra) -> Dict[str, Any]:
    return {"order_by": {"column": column, "ascending": False}, **extra}


def _by_name(column: str = "name", **extra) -> Dict[str, Any]:
    return {"order_by": {"column": column, "ascending": True}, **extra}


TABLE_PRESETS: Dict[str, Dict[str, Any]] = {
    # Trading
    "sales": _newest_first(select="id, total_amount, customer_name, product, created_at"),
    "purchases": _newest_first(select="id, total_amount, supplier_name, commodity_type, created_at"),
    "sales_orders": _newest_first(),
    "invoices": _newest_first(),
    "customers": _by_name(),
    "commodities": _by_name(),
    "commodity_prices": _newest_first("price_date"),
    "trading_positions": _newest_first("opened_at"),
    "quality_tests": _newest_first("test_date"),
    "smelter_sales": _newest_first(),
    # Logistics and operations
    "shipments": _newest_first(),
    "equipments": _newest_first(),
    "fuel_entries": _newest_first(),
    "stock": _by_name("item_name"),
    "mining_concessions": _newest_first(),
    "geological_surveys": _newest_first("survey_date"),
    "environmental_monitoring": _newest_first("monitoring_date"),
    # Finance and HR
    "expenses": _newest_first(),
    "employee_profiles": _newest_first(),
    "departments": _by_name(),
    "attendance_records": _newest_first("date"),
    "file_activities": _newest_first(),
}


def get_preset(name: str) -> QueryDescriptor:
    if name not in TABLE_PRESETS:
        raise KeyError(f"no preset for table '{name}'")
    return QueryDescriptor.from_dict(TABLE_PRESETS[name])
