from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from channel_mirror.models import EmbedDescriptor, OpenGraphMeta, Post


class ChannelSource(Protocol):
    async def fetch_channel_page(
        self,
        request_headers: Mapping[str, str] | None,
        *,
        before: str | None = None,
        after: str | None = None,
        q: str | None = None,
    ) -> str: ...

    async def fetch_post_page(
        self,
        request_headers: Mapping[str, str] | None,
        post_id: str,
    ) -> str: ...


class EmbedHydrator(Protocol):
    async def hydrate(self, posts: Iterable[Post]) -> None: ...


class EmbedDescriptorResolver(Protocol):
    async def resolve(self, raw_url: str) -> EmbedDescriptor: ...


class OEmbedSource(Protocol):
    async def discover(self, url: str) -> str | None: ...

    async def fetch(self, endpoint: str, original: str) -> dict[str, Any] | None: ...

    async def scrape_meta(self, url: str) -> OpenGraphMeta | None: ...


class EmbedStore(Protocol):
    def get(self, key: str) -> EmbedDescriptor | None: ...

    def set(self, key: str, value: EmbedDescriptor) -> None: ...
