"""External data and advisory connectors module."""

from paperpilot.connectors.advisors import AnthropicAdvisor, LocalAdvisor, OpenAIAdvisor
from paperpilot.connectors.base import Advisor, MarketDataProvider, SentimentProvider
from paperpilot.connectors.market_data import CoinGeckoClient

__all__ = [
    "Advisor",
    "MarketDataProvider",
    "SentimentProvider",
    "AnthropicAdvisor",
    "LocalAdvisor",
    "OpenAIAdvisor",
    "CoinGeckoClient",
]
