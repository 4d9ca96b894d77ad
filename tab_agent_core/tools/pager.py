"""超长工具结果的分页缓存。

工具结果序列化后超过 page_size 个字符时，整段内容按固定大小切页并缓存，
模型只拿到第 0 页和 responseId，之后通过 getResponsePage 工具按页读取。

- 页码从 0 开始；越界、非整数页码、未知或已回收的 responseId 一律抛出
  ResultNotFoundError，不返回空页。
- 最多保留 max_entries 条结果（最旧的先淘汰），超过 ttl_seconds 的条目在访问时回收。
- 结果归属于产生它的标签页：其他标签页读取时视为不存在；
  清空某个标签页的对话时调用 invalidate_tab 使其所有分页结果失效。
"""

import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from tab_agent_core.config.settings import settings
from tab_agent_core.domain.exceptions import ResultNotFoundError
from tab_agent_core.infrastructure.logging.logger import logger
from tab_agent_core.infrastructure.storage.kv_store import StorageChange


TRUNCATION_HINT = "\n\n[TRUNCATED - Use getResponsePage tool with responseId to see more content]"


@dataclass
class PagedResult:
    response_id: str
    tab_id: Optional[str]
    tool_name: Optional[str]
    pages: List[str]
    page_size: int
    original_length: int
    created_at: float

    @property
    def total_pages(self) -> int:
        return len(self.pages)


@dataclass
class ResultPage:
    response_id: str
    content: str
    current_page: int
    total_pages: int
    original_length: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return self.current_page < self.total_pages - 1

    @property
    def has_previous(self) -> bool:
        return self.current_page > 0

    def meta(self) -> Dict[str, Any]:
        return {
            "responseId": self.response_id,
            "currentPage": self.current_page,
            "totalPages": self.total_pages,
            "hasMore": self.has_more,
            "hasPrevious": self.has_previous,
            "originalLength": self.original_length,
            "pageSize": self.page_size,
            "isTruncated": True,
        }

    def to_payload(self) -> Dict[str, Any]:
        """RESPONSE_PAGE / getResponsePage 的回复结构。"""

        return {"success": True, "result": self.content, "_meta": self.meta()}


def serialize_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return str(payload)


class ResultPager:
    def __init__(
        self,
        page_size: Optional[int] = None,
        max_entries: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._page_size = page_size or settings.truncation_limit
        self._max_entries = max_entries or settings.pager_max_entries
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.pager_ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, PagedResult]" = OrderedDict()

    @property
    def page_size(self) -> int:
        return self._page_size

    def set_page_size(self, page_size: int) -> None:
        """只影响之后存入的结果，已缓存结果保持原来的切页。"""

        if page_size and page_size > 0 and page_size != self._page_size:
            logger.info("Pager page size changed", extra={"extra": {"old": self._page_size, "new": page_size}})
            self._page_size = int(page_size)

    def on_storage_change(self, change: StorageChange) -> None:
        """KeyValueStore 监听器：settings.truncationLimit 变化时同步 page_size。"""

        if change.key != "settings" or not isinstance(change.new_value, dict):
            return
        limit = change.new_value.get("truncationLimit")
        if isinstance(limit, int) and not isinstance(limit, bool):
            self.set_page_size(limit)

    def store(self, payload: Any, tab_id: Optional[str] = None, tool_name: Optional[str] = None) -> Optional[str]:
        """缓存超长结果并返回 responseId；未超过 page_size 时返回 None。"""

        text = serialize_payload(payload)
        if len(text) <= self._page_size:
            return None
        self._collect_expired()
        size = self._page_size
        pages = [text[i:i + size] for i in range(0, len(text), size)]
        response_id = f"resp_{int(time.time() * 1000)}_{uuid4().hex[:8]}"
        self._entries[response_id] = PagedResult(
            response_id=response_id,
            tab_id=str(tab_id) if tab_id is not None else None,
            tool_name=tool_name,
            pages=pages,
            page_size=size,
            original_length=len(text),
            created_at=self._clock(),
        )
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted paged result", extra={"extra": {"response_id": evicted}})
        logger.info(
            "Stored paged result",
            extra={
                "extra": {
                    "response_id": response_id,
                    "tab_id": tab_id,
                    "tool": tool_name,
                    "total_pages": len(pages),
                    "original_length": len(text),
                }
            },
        )
        return response_id

    def get_page(self, response_id: str, page: Any, tab_id: Optional[str] = None) -> ResultPage:
        """读取某一页。给出 tab_id 时只能读取该标签页产生的结果。"""

        self._collect_expired()
        entry = self._entries.get(response_id) if isinstance(response_id, str) else None
        if entry is not None and tab_id is not None and entry.tab_id is not None and entry.tab_id != str(tab_id):
            logger.warning(
                "Paged result requested from another tab",
                extra={"extra": {"response_id": response_id, "tab_id": str(tab_id), "owner_tab_id": entry.tab_id}},
            )
            entry = None
        if entry is None:
            raise ResultNotFoundError(f"Response not found or expired: {response_id}", response_id=response_id)
        if isinstance(page, bool) or not isinstance(page, int) or not 0 <= page < entry.total_pages:
            raise ResultNotFoundError(
                f"Page {page} not found for {response_id} (total pages: {entry.total_pages})",
                response_id=response_id,
                total_pages=entry.total_pages,
            )
        return ResultPage(
            response_id=response_id,
            content=entry.pages[page],
            current_page=page,
            total_pages=entry.total_pages,
            original_length=entry.original_length,
            page_size=entry.page_size,
        )

    def paginate(
        self, payload: Any, tab_id: Optional[str] = None, tool_name: Optional[str] = None
    ) -> Tuple[Any, Optional[Dict[str, Any]]]:
        """对工具结果做分页：返回 (给模型的内容, _meta)。未分页时原样返回。"""

        response_id = self.store(payload, tab_id=tab_id, tool_name=tool_name)
        if response_id is None:
            return payload, None
        first = self.get_page(response_id, 0)
        return first.content + TRUNCATION_HINT, first.meta()

    def has_response(self, response_id: str) -> bool:
        self._collect_expired()
        return response_id in self._entries

    def invalidate_tab(self, tab_id: str) -> int:
        key = str(tab_id)
        stale = [rid for rid, entry in self._entries.items() if entry.tab_id == key]
        for rid in stale:
            del self._entries[rid]
        if stale:
            logger.info("Invalidated paged results", extra={"extra": {"tab_id": key, "count": len(stale)}})
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def _collect_expired(self) -> None:
        if self._ttl <= 0:
            return
        deadline = self._clock() - self._ttl
        expired = [rid for rid, entry in self._entries.items() if entry.created_at < deadline]
        for rid in expired:
            del self._entries[rid]

