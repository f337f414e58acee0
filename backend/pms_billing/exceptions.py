"""
账本错误类型

BillingError 继承 ValueError，调用方沿用 `except ValueError` 的处理方式；
status_code 供外层（HTTP 等）直接映射，无需识别具体类型。
"""
from typing import Any, Dict, Optional


class BillingError(ValueError):
    """账本业务错误基类"""

    status_code = 400

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class NotFoundError(BillingError):
    """引用的账单、交易、价格策略或快照不存在"""

    status_code = 404


class BadRequestError(BillingError):
    """请求参数或状态不合法"""

    status_code = 400


class LedgerInvariantError(RuntimeError):
    """
    账本不变量被破坏：余额与未作废交易合计不一致
    属于程序缺陷，不应出现在正常调用路径中
    """

    status_code = 500

    def __init__(self, folio_id: int, expected, actual):
        super().__init__(
            f"Folio {folio_id} balance mismatch: stored={actual}, recomputed={expected}"
        )
        self.folio_id = folio_id
        self.expected = expected
        self.actual = actual
