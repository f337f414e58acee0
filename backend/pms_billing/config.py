"""
应用配置
从环境变量读取配置（支持 .env 文件）
"""
from decimal import Decimal
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用设置"""

    # 应用基础配置
    APP_NAME: str = "PMS Billing"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # 数据库配置
    DATABASE_URL: str = "sqlite:///./pms_billing.db"

    # 编码规则: <PREFIX><YYMMDD><NNNN>
    FOLIO_CODE_PREFIX: str = "FLO"
    FOLIO_CODE_WIDTH: int = 4
    TRANSACTION_CODE_PREFIX: str = "TXN"
    TRANSACTION_CODE_WIDTH: int = 5
    RESERVATION_CODE_PREFIX: str = "RES"
    RESERVATION_CODE_WIDTH: int = 4
    INVOICE_CODE_PREFIX: str = "INV"
    INVOICE_CODE_WIDTH: int = 4

    # 发票税率（打印时计算增值税）
    INVOICE_TAX_RATE: Decimal = Decimal("0.10")

    # 夜审
    EXTRA_PERSON_SERVICE_CODE: str = "EXTRA_PERSON"

    # 金额精度
    MONEY_QUANTUM: Decimal = Decimal("0.01")

    # 分页
    DEFAULT_PAGE_SIZE: int = 10
    MAX_PAGE_SIZE: int = 100
    RATE_POLICY_LOG_PREVIEW_LIMIT: int = 100

    model_config = ConfigDict(env_file=".env", case_sensitive=True)


# 全局设置实例
settings = Settings()
