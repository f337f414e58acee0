"""
分页查询辅助
返回 {results, meta} 结构，供账单与价格策略列表使用
"""
import math
from typing import Iterable, Optional

from sqlalchemy.orm import Query

from pms_billing.exceptions import BadRequestError
from pms_billing.models.schemas import PageParams


def paginate(query: Query, model, page: Optional[PageParams], sortable: Iterable[str]) -> dict:
    """排序并分页；sort_by 仅允许白名单字段"""
    page = page or PageParams()
    if page.sort_by not in set(sortable):
        raise BadRequestError(f"不支持的排序字段: {page.sort_by}")

    column = getattr(model, page.sort_by)
    order = column.asc() if page.sort_type == "asc" else column.desc()

    total = query.count()
    results = query.order_by(order, model.id.desc()).offset(
        (page.page - 1) * page.limit
    ).limit(page.limit).all()

    return {
        'results': results,
        'meta': {
            'page': page.page,
            'limit': page.limit,
            'total_pages': math.ceil(total / page.limit) if total else 0,
            'total_results': total,
        }
    }
