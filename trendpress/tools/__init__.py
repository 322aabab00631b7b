"""
External collaborator clients.

- LLMClient: Anthropic API for classification, synthesis and review
- MediaStorage: Supabase Storage rehosting of source media
- Threads/Instagram/Twitter publishers: platform publishing over httpx
- ScraperClient: raw posts from the external scraper service
"""

from trendpress.tools.llm_client import LLMClient, get_llm
from trendpress.tools.media_storage import MediaStorage
from trendpress.tools.platforms import PlatformPublisher, PublishResult, default_publishers
from trendpress.tools.scraper_client import ScraperClient

__all__ = [
    "LLMClient",
    "MediaStorage",
    "PlatformPublisher",
    "PublishResult",
    "ScraperClient",
    "default_publishers",
    "get_llm",
]
