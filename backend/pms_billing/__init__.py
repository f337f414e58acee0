"""
PMS Billing - 账单账本与夜审引擎
"""
__version__ = "0.1.0"
