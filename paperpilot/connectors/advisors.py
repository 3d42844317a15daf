"""Advisory providers: OpenAI, Anthropic and the local rule-based fallback."""

from __future__ import annotations

import re
from typing import Any

import orjson
import structlog
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from paperpilot.config.settings import LLMConfig
from paperpilot.models import AdvisorVerdict
from paperpilot.utils.retry import RetryPolicy, retry_async


SYSTEM_PROMPT = (
    "You are a professional cryptocurrency trading analyst. Provide structured, "
    "data-driven analysis in JSON format. Be realistic about risks and uncertainties."
)

PROFILE_GUIDANCE = {
    "conservative": (
        "Only recommend BUY or SELL with strong, multi-source conviction. "
        "Prefer HOLD when signals conflict. Confidence should rarely exceed 80."
    ),
    "moderate": (
        "Recommend BUY or SELL when the balance of evidence is clearly directional. "
        "Confidence should rarely exceed 85."
    ),
    "aggressive": (
        "Act on emerging momentum even when some signals are mixed, "
        "but keep stops tight and size small for high-risk setups."
    ),
    "debug": (
        "Testing mode: prefer a directional BUY or SELL over HOLD whenever any signal supports it."
    ),
}

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def build_prompt(payload: dict[str, Any], profile: str) -> str:
    technical = payload.get("technical") or {}
    market = payload.get("market") or {}
    sentiment = payload.get("sentiment")
    guidance = PROFILE_GUIDANCE.get(profile, PROFILE_GUIDANCE["moderate"])
    side = payload.get("side", "BUY")
    position = payload.get("position")

    lines = [
        f"Analyze {payload['symbol']} and provide a trading recommendation.",
        "",
        f"Current price: ${payload['current_price']:.8g}",
        f"Opportunity under review: {side} ({payload.get('reason', 'discovery')}, "
        f"urgency {payload.get('urgency', 'medium')})",
        "",
        "Technical indicators:",
        f"- RSI: {_fmt(technical.get('rsi'))}",
        f"- EMA fast/slow: {_fmt(technical.get('ema_fast'))} / {_fmt(technical.get('ema_slow'))}",
        f"- Trend: {technical.get('trend', 'unknown')}",
        f"- Change over window: {_fmt(technical.get('change_pct'))}%",
        "",
        "Market:",
        f"- 24h change: {_fmt(market.get('change_24h'))}%",
        f"- 7d change: {_fmt(market.get('change_7d'))}%",
        f"- 24h volume: {_fmt(market.get('volume_24h'))}",
        f"- Market cap: {_fmt(market.get('market_cap'))}",
        f"- Composite discovery score: {_fmt(market.get('composite_score'))}",
        "",
        f"Sentiment score (-1..1): {_fmt(sentiment)}",
    ]
    if position:
        lines += [
            "",
            "Current holding:",
            f"- Quantity: {_fmt(position.get('quantity'))}",
            f"- Average entry: {_fmt(position.get('entry_price'))}",
            f"- Unrealized P&L: {_fmt(position.get('percent_gain'))}%",
        ]
    lines += [
        "",
        "Respond with JSON only:",
        "{",
        '  "action": "BUY" | "SELL" | "HOLD",',
        '  "confidence": 0-100,',
        '  "reasoning": "primary reasoning",',
        '  "entryPrice": number or null,',
        '  "stopLoss": number or null,',
        '  "takeProfitLevels": [target1, target2],',
        '  "positionSize": 0.01-0.05,',
        '  "riskLevel": "LOW" | "MEDIUM" | "HIGH",',
        '  "keyFactors": ["factor", ...]',
        "}",
        "",
        "Guidelines:",
        "1. Stop loss is MANDATORY for any BUY recommendation and must be below the entry price.",
        "2. Position size should reflect risk level (lower for higher risk).",
        f"3. {guidance}",
    ]
    return "\n".join(lines)


def _fmt(value: Any) -> str:
    if value is None:
        return "N/A"
    if isinstance(value, float):
        return f"{value:.4g}"
    return str(value)


def _safe_float(value: Any, default: float | None = None) -> float | None:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_verdict(raw: str, source: str) -> AdvisorVerdict:
    """Parse a provider's JSON answer; unreadable answers raise ``ValueError``."""
    text = _FENCE.sub("", raw.strip())
    try:
        data = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise ValueError(f"{source} returned non-JSON content") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{source} returned a non-object JSON value")

    action = str(data.get("action", "HOLD")).upper()
    if action not in {"BUY", "SELL", "HOLD"}:
        action = "HOLD"
    confidence = _safe_float(data.get("confidence"), 0.0) or 0.0
    confidence = max(0.0, min(100.0, confidence))

    reasoning = data.get("reasoning", "")
    if isinstance(reasoning, dict):
        reasoning = reasoning.get("conclusion") or " ".join(str(v) for v in reasoning.values())

    targets = data.get("takeProfitLevels") or []
    if not isinstance(targets, list):
        targets = []
    take_profits = tuple(t for t in (_safe_float(v) for v in targets) if t and t > 0)[:2]

    factors = data.get("keyFactors") or []
    if not isinstance(factors, list):
        factors = []

    size = _safe_float(data.get("positionSize"), 0.02) or 0.02
    return AdvisorVerdict(
        action=action,  # type: ignore[arg-type]
        confidence=confidence,
        entry_price=_safe_float(data.get("entryPrice")),
        stop_loss=_safe_float(data.get("stopLoss")),
        take_profits=take_profits,
        position_size=max(0.0, min(size, 0.05)),
        risk_level=str(data.get("riskLevel", "MEDIUM")).upper(),
        reasoning=str(reasoning)[:2000],
        key_factors=tuple(str(f) for f in factors if f),
        source=source,
    )


class OpenAIAdvisor:
    name = "openai"

    def __init__(self, config: LLMConfig, api_key: str, client: AsyncOpenAI | None = None) -> None:
        self.config = config
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.policy = RetryPolicy(max_retries=config.retry_attempts)

    async def recommend(self, payload: dict[str, Any], profile: str) -> AdvisorVerdict:
        async def _call() -> AdvisorVerdict:
            response = await self.client.chat.completions.create(
                model=self.config.openai_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(payload, profile)},
                ],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                response_format={"type": "json_object"},
            )
            content = response.choices[0].message.content or "{}"
            return parse_verdict(content, self.name)

        return await retry_async(
            _call,
            self.policy,
            operation="openai_recommend",
            timeout_sec=self.config.request_timeout_sec,
        )


class AnthropicAdvisor:
    name = "anthropic"

    def __init__(self, config: LLMConfig, api_key: str, client: AsyncAnthropic | None = None) -> None:
        self.config = config
        self.client = client or AsyncAnthropic(api_key=api_key)
        self.policy = RetryPolicy(max_retries=config.retry_attempts)

    async def recommend(self, payload: dict[str, Any], profile: str) -> AdvisorVerdict:
        async def _call() -> AdvisorVerdict:
            response = await self.client.messages.create(
                model=self.config.anthropic_model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": build_prompt(payload, profile)}],
            )
            content = response.content[0].text if response.content else "{}"
            return parse_verdict(content, self.name)

        return await retry_async(
            _call,
            self.policy,
            operation="anthropic_recommend",
            timeout_sec=self.config.request_timeout_sec,
        )


class LocalAdvisor:
    """Deterministic bullish/bearish signal counting over RSI and sentiment."""

    name = "local"

    MAX_CONFIDENCE = 60.0
    CONFIDENCE_PER_SIGNAL = 15.0
    STOP_PCT = 0.05
    TARGETS = (1.05, 1.10)

    def __init__(self) -> None:
        self._log = structlog.get_logger(__name__)

    async def recommend(self, payload: dict[str, Any], profile: str) -> AdvisorVerdict:
        return self.evaluate(payload)

    def evaluate(self, payload: dict[str, Any]) -> AdvisorVerdict:
        price = float(payload["current_price"])
        rsi = (payload.get("technical") or {}).get("rsi")
        sentiment = payload.get("sentiment")

        bullish = 0
        bearish = 0
        factors: list[str] = []
        if rsi is not None and rsi < 30:
            bullish += 1
            factors.append("RSI oversold")
        elif rsi is not None and rsi > 70:
            bearish += 1
            factors.append("RSI overbought")
        if sentiment is not None and sentiment > 0.3:
            bullish += 1
            factors.append("Positive sentiment")
        elif sentiment is not None and sentiment < -0.3:
            bearish += 1
            factors.append("Negative sentiment")

        action = "HOLD"
        if bullish > bearish + 1:
            action = "BUY"
        elif bearish > bullish + 1:
            action = "SELL"
        confidence = min(self.MAX_CONFIDENCE, abs(bullish - bearish) * self.CONFIDENCE_PER_SIGNAL)

        self._log.info(
            "local_recommendation",
            symbol=payload.get("symbol"),
            action=action,
            bullish=bullish,
            bearish=bearish,
        )
        is_buy = action == "BUY"
        return AdvisorVerdict(
            action=action,  # type: ignore[arg-type]
            confidence=confidence,
            entry_price=price if is_buy else None,
            stop_loss=price * (1 - self.STOP_PCT) if is_buy else None,
            take_profits=tuple(price * t for t in self.TARGETS) if is_buy else (),
            position_size=0.02,
            risk_level="MEDIUM",
            reasoning=f"Local analysis: {bullish} bullish vs {bearish} bearish signals",
            key_factors=tuple(factors),
            source=self.name,
        )
