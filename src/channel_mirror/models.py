import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from channel_mirror.cursor import normalize_cursor
from channel_mirror.tags import normalize_tag

Direction = Literal["newer", "older"]


class AudioMedia(BaseModel):
    kind: Literal["audio"] = "audio"
    url: str
    mime: str | None = None
    caption: str | None = None


# Embed descriptors: exactly one variant per resolution


class FirstClassEmbed(BaseModel):
    kind: Literal["first-class"] = "first-class"
    component: str
    props: dict[str, Any] = Field(default_factory=dict)


class OEmbedEmbed(BaseModel):
    kind: Literal["oembed"] = "oembed"
    url: str
    html: str | None = None
    title: str | None = None
    thumbnail_url: str | None = None
    provider_name: str | None = None


class OpenGraphMeta(BaseModel):
    title: str | None = None
    description: str | None = None
    image: str | None = None
    site_name: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.title or self.description or self.image)


class OpenGraphEmbed(BaseModel):
    kind: Literal["og-card"] = "og-card"
    url: str
    meta: OpenGraphMeta


class LinkEmbed(BaseModel):
    kind: Literal["link"] = "link"
    url: str


EmbedDescriptor = Annotated[
    FirstClassEmbed | OEmbedEmbed | OpenGraphEmbed | LinkEmbed,
    Field(discriminator="kind"),
]


class EmbedCacheEntry(BaseModel):
    timestamp: float
    value: EmbedDescriptor


# Channel snapshot


class Embed(BaseModel):
    url: str | None = None
    oembed_html: str | None = None
    descriptor: EmbedDescriptor | None = None


class Post(BaseModel):
    id: str
    type: Literal["text", "service"] = "text"
    title: str = ""
    text: str = ""
    tags: list[str] = Field(default_factory=list)
    content: str = ""
    media: list[AudioMedia] = Field(default_factory=list)
    embeds: list[Embed] = Field(default_factory=list)
    datetime: str | None = None
    embeds_enabled: bool = True


class ChannelInfo(BaseModel):
    posts: list[Post] = Field(default_factory=list)
    title: str | None = None
    description: str | None = None
    description_html: str | None = None
    avatar: str | None = None
    available_tags: list[str] = Field(default_factory=list)
    tag_index: dict[str, list[Post]] = Field(default_factory=dict)
    selected_tag: str = ""
    embeds_enabled: bool = True
    has_newer: bool = False
    has_older: bool = False


class ChannelPage(BaseModel):
    """One parsed upstream page before tag filtering and slicing."""

    posts: list[Post] = Field(default_factory=list)
    title: str | None = None
    description: str | None = None
    description_html: str | None = None
    avatar: str | None = None


class ExtractOptions(BaseModel):
    channel: str
    static_proxy: str = "/static/"
    base_url: str = "/"
    telegram_host: str = "t.me"
    enable_embeds: bool = True


class AdjacentPost(BaseModel):
    picked_post: Post | None = None
    has_newer: bool = False
    has_older: bool = False


# Request options


class ChannelQuery(BaseModel):
    before: str | None = None
    after: str | None = None
    q: str = ""
    type: Literal["list", "post"] = "list"
    id: str | None = None
    tag: str = ""
    limit: int | None = None
    navigate_from: str | None = None
    direction: Direction | None = None
    # Raw pivot text; a malformed pivot still selects navigation.
    navigation_pivot: str = ""

    @model_validator(mode="before")
    @classmethod
    def _keep_pivot(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "navigation_pivot" in data:
            return data
        raw = data.get("navigate_from")
        if isinstance(raw, int) and not isinstance(raw, bool):
            raw = str(raw)
        return {**data, "navigation_pivot": raw.strip() if isinstance(raw, str) else ""}

    @field_validator("before", "after", "id", "navigate_from", mode="before")
    @classmethod
    def _cursor(cls, value: Any) -> str | None:
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        return normalize_cursor(value)

    @field_validator("q", mode="before")
    @classmethod
    def _query(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        return value if value in ("list", "post") else "list"

    @field_validator("tag", mode="before")
    @classmethod
    def _tag(cls, value: Any) -> str:
        return normalize_tag(value)

    @field_validator("limit", mode="before")
    @classmethod
    def _limit(cls, value: Any) -> int | None:
        if isinstance(value, bool):
            return None
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value.strip())
        if isinstance(value, int) and value > 0:
            return value
        return None

    @field_validator("direction", mode="before")
    @classmethod
    def _direction(cls, value: Any) -> str | None:
        return value if value in ("newer", "older") else None

    @property
    def is_navigation(self) -> bool:
        return bool(self.navigation_pivot and self.direction)

    @property
    def search_query(self) -> str:
        if self.type == "post":
            return self.q
        return self.q or (f"#{self.tag}" if self.tag else "")

    def cache_key(self, *, embeds_enabled: bool) -> str:
        payload = self.model_dump(mode="json")
        payload["embeds_enabled"] = embeds_enabled
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))
