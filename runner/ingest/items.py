from dataclasses import asdict, dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ChallengeDetection:
    type: str  # cloudflare | akamai | bot-block | unknown
    indicator: str
    reason: Optional[str] = None
    confidence: float = 0.0


@dataclass
class VideoRef:
    title: Optional[str] = None
    url: Optional[str] = None
    embed_url: Optional[str] = None
    thumbnail: Optional[str] = None


@dataclass
class SourceRef:
    name: str
    url: str
    license: Optional[str] = None


@dataclass
class NormalizedItem:
    external_id: str
    title: str
    url: str
    source: SourceRef
    published_at: Optional[str] = None
    excerpt: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    authors: list[str] = field(default_factory=list)
    timestamp_text: Optional[str] = None
    image: Optional[str] = None
    images: list[str] = field(default_factory=list)
    videos: list[VideoRef] = field(default_factory=list)
    credits: Optional[str] = None
    lang: Optional[str] = None
    links: list[str] = field(default_factory=list)
    challenge: Optional[ChallengeDetection] = None
    warnings: list[str] = field(default_factory=list)

    def to_payload(self) -> dict:
        return asdict(self)


@dataclass
class ExtractedArticle:
    url: str
    title: Optional[str] = None
    authors: list[str] = field(default_factory=list)
    timestamp_text: Optional[str] = None
    published_at: Optional[str] = None
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    image: Optional[str] = None
    images: list[str] = field(default_factory=list)
    videos: list[VideoRef] = field(default_factory=list)
    credits: Optional[str] = None
    lang: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    tagline: Optional[str] = None
    excerpt: Optional[str] = None
    challenge: Optional[ChallengeDetection] = None
    debug: dict = field(default_factory=dict)


@dataclass
class PendingFeedState:
    feed: str
    processed_items: int = 0
    total_items: Optional[int] = None
    remaining_items: Optional[int] = None
    next_item_url: Optional[str] = None
    last_processed_url: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)
