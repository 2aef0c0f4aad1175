from __future__ import annotations

from typing import Any, Optional

import httpx
from loguru import logger


class ExperimentConfigFetcher:
    """
    拉取远程实验配置

    `GET <url>` -> `{"experiments": [...]}`；网络错误、非 200、非 JSON 一律返回 None（视为不可用）。
    """

    def __init__(self, url: Optional[str], *, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self._timeout = timeout
        self._transport = transport

    async def fetch(self) -> Optional[list[Any]]:
        if not self.url:
            return None

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(self.url)
            if response.status_code != 200:
                logger.warning(f"实验配置拉取失败: status={response.status_code}, url={self.url}")
                return None
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"实验配置拉取失败: url={self.url}, err={exc}")
            return None

        if not isinstance(payload, dict):
            return []
        experiments = payload.get("experiments")
        return experiments if isinstance(experiments, list) else []
