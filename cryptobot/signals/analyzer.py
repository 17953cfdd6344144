"""LLM-backed technical analysis that produces advisory signals."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from openai import AsyncOpenAI, OpenAIError

from ..data import MarketDataGateway
from ..database import SignalRecord
from ..errors import SymbolNotFound, UpstreamUnavailable
from ..exchanges import SymbolResolver
from .indicators import indicator_snapshot
from .signal_service import SignalService

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    'You are a professional cryptocurrency trading analyst with expertise in technical analysis. '
    'You provide data-driven trading recommendations based on technical indicators, market conditions, '
    'and risk management principles. Always consider proper risk/reward ratios and realistic price targets.'
)

Completion = Callable[[str, str], Awaitable[str]]


def _label_rsi(value: float) -> str:
    if value > 70:
        return '(Overbought)'
    if value < 30:
        return '(Oversold)'
    return '(Neutral)'


def build_prompt(symbol: str, indicators: Dict[str, Any]) -> str:
    price = indicators['currentPrice']
    sma20 = indicators['sma20']
    macd = indicators['macd']
    return f"""Analyze {symbol} cryptocurrency and provide a professional trading recommendation.

CURRENT MARKET DATA:
- Current Price: ${price:.2f}
- 24h High: ${indicators['high24h']:.2f}
- 24h Low: ${indicators['low24h']:.2f}
- 24h Volume: {indicators['volume24h']:.2f}
- 24h Price Change: {indicators['priceChange24h']:.2f}%

TECHNICAL INDICATORS:
- RSI (14): {indicators['rsi']:.2f} {_label_rsi(indicators['rsi'])}
- SMA (20): ${sma20:.2f} - Price is {'above' if price > sma20 else 'below'} SMA
- EMA (12): ${indicators['ema12']:.2f}
- EMA (26): ${indicators['ema26']:.2f}
- MACD: {macd:.2f} {'(Bullish)' if macd > 0 else '(Bearish)'}
- Volume Trend: {indicators['volumeTrend']:.2f}% vs average
- Support Level: ${indicators['support']:.2f}
- Resistance Level: ${indicators['resistance']:.2f}

INSTRUCTIONS:
1. Analyze the technical indicators and market conditions
2. Determine if this is a BUY, SELL, or HOLD opportunity
3. Set realistic entry, target, and stop-loss prices based on current levels
4. Calculate risk/reward ratio (should be at least 2:1 for buy/sell signals)
5. Provide clear reasoning based on the technical analysis
6. Assign confidence level (0-100) based on signal strength

Respond with JSON only in this exact format:
{{
  "signal": "buy|sell|hold",
  "confidence": number (0-100),
  "reasoning": "detailed explanation of analysis and why this signal was generated",
  "entryPrice": number (recommended entry price),
  "targetPrice": number (profit target),
  "stopLoss": number (stop loss level),
  "riskReward": number (risk/reward ratio)
}}"""


def parse_analysis(content: Optional[str]) -> Dict[str, Any]:
    try:
        analysis = json.loads(content or '')
    except json.JSONDecodeError as error:
        raise UpstreamUnavailable('AI analysis returned invalid JSON') from error
    if not isinstance(analysis, dict):
        raise UpstreamUnavailable('AI analysis returned an unexpected payload')
    analysis['signal'] = str(analysis.get('signal', 'hold')).lower()
    if analysis['signal'] not in {'buy', 'sell', 'hold'}:
        raise UpstreamUnavailable(f"AI analysis returned an unknown signal: {analysis['signal']}")
    try:
        confidence = float(analysis.get('confidence', 0))
    except (TypeError, ValueError):
        confidence = 0.0
    analysis['confidence'] = int(round(min(max(confidence, 0.0), 100.0)))
    return analysis


@dataclass
class AnalysisResult:
    signal: SignalRecord
    analysis: Dict[str, Any]
    indicators: Dict[str, Any]


class SignalAnalyzer:
    def __init__(
        self,
        gateway: MarketDataGateway,
        resolver: SymbolResolver,
        signals: SignalService,
        *,
        api_key: Optional[str] = None,
        model: str = 'gpt-4o-mini',
        completion: Optional[Completion] = None,
    ) -> None:
        self._gateway = gateway
        self._resolver = resolver
        self._signals = signals
        self._api_key = api_key
        self._model = model
        self._completion = completion
        self._client: Optional[AsyncOpenAI] = None

    def _openai(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                raise UpstreamUnavailable('OPENAI_API_KEY is not configured; AI analysis is unavailable')
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def _complete(self, system: str, prompt: str) -> str:
        if self._completion is not None:
            return await self._completion(system, prompt)
        try:
            response = await self._openai().chat.completions.create(
                model=self._model,
                messages=[
                    {'role': 'system', 'content': system},
                    {'role': 'user', 'content': prompt},
                ],
                response_format={'type': 'json_object'},
            )
        except OpenAIError as error:
            raise UpstreamUnavailable(f'AI analysis failed: {error}') from error
        return response.choices[0].message.content or ''

    async def analyze(self, symbol: str, timeframe: int | str = 60) -> AnalysisResult:
        normalized = (symbol or '').strip().upper()
        pair = await self._resolver.resolve_trading_symbol(normalized)
        if pair is None:
            raise SymbolNotFound(normalized, 'Invalid or unsupported symbol')
        display = await self._resolver.display_symbol(pair) or normalized

        snapshot = await self._gateway.get_current_price(pair)
        candles = await self._gateway.get_candles(pair, timeframe)
        indicators = indicator_snapshot(candles, snapshot)

        content = await self._complete(SYSTEM_PROMPT, build_prompt(display, indicators))
        analysis = parse_analysis(content)
        logger.info('AI analysis for %s: %s (%d)', display, analysis['signal'], analysis['confidence'])

        record = await self._signals.ingest(
            {
                'symbol': display,
                'signal': analysis['signal'],
                'confidence': analysis['confidence'],
                'entryPrice': analysis.get('entryPrice') or str(snapshot.price),
                'targetPrice': analysis.get('targetPrice'),
                'stopLoss': analysis.get('stopLoss'),
                'riskReward': analysis.get('riskReward'),
                'reasoning': analysis.get('reasoning'),
                'indicators': indicators,
            }
        )
        return AnalysisResult(signal=record, analysis=analysis, indicators=indicators)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


__all__ = ['AnalysisResult', 'SYSTEM_PROMPT', 'SignalAnalyzer', 'build_prompt', 'parse_analysis']
