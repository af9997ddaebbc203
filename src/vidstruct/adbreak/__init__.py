"""广告插入点搜索。"""

from .search import AdBreakSearch, adbreak_document, rank_candidates, search_ad_breaks

__all__ = ["AdBreakSearch", "adbreak_document", "rank_candidates", "search_ad_breaks"]
