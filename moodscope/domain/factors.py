"""
Factor extractors for mood scoring.

Each extractor is a pure function of a conversational unit. It returns a
FactorSignal carrying a normalized internal score on the 0-10 mood scale and
the evidence phrases that produced it. Extractors never see weights; the
MoodScorer combines them.

Extractors:
- SentimentExtractor: weighted word lexicon with amplifiers and a negation window
- PsychologicalIndicatorExtractor: coping and resilience vs distress phrases
- RelationshipContextExtractor: connection vs conflict markers
- ConversationalFlowExtractor: how the exchange closes, and whether mood rose or
  fell from opening to closing
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from moodscope.domain.units import ConversationalUnit
from moodscope.utils.errors import LowSignalInput

NEUTRAL_SCORE = 5.0
MAX_SWING = 4.5  # internal scores stay within [0.5, 9.5]

_TOKEN_RE = re.compile(r"[a-z]+(?:'[a-z]+)?")


class FactorType(str, Enum):
    SENTIMENT_ANALYSIS = "sentiment_analysis"
    PSYCHOLOGICAL_INDICATORS = "psychological_indicators"
    RELATIONSHIP_CONTEXT = "relationship_context"
    CONVERSATIONAL_FLOW = "conversational_flow"


@dataclass(frozen=True)
class FactorSignal:
    """Output of one extractor for one unit."""

    type: FactorType
    internal_score: float
    evidence: Tuple[str, ...]
    description: str

    @property
    def has_evidence(self) -> bool:
        return len(self.evidence) > 0


def balance_to_score(positive: float, negative: float, hits: int) -> float:
    """
    Map positive/negative evidence mass onto the 0-10 scale.

    The polarity balance sets the direction; the number of hits sets how far
    from neutral the score is allowed to move, so one stray word cannot push
    a factor to an extreme.

    Args:
        positive: Total positive weight
        negative: Total negative weight
        hits: Number of evidence hits

    Returns:
        Internal score in [0.5, 9.5]
    """
    total = positive + negative
    if total <= 0:
        return NEUTRAL_SCORE
    balance = (positive - negative) / total
    strength = min(1.0, 0.5 + 0.125 * hits)
    return NEUTRAL_SCORE + MAX_SWING * balance * strength


def _unique(items: Sequence[str]) -> Tuple[str, ...]:
    seen: List[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return tuple(seen)


def _lean(score: float) -> str:
    if score >= 6.0:
        return "positive"
    if score <= 4.0:
        return "negative"
    return "mixed"


def _compile_phrases(phrases: Dict[str, float]) -> List[Tuple[str, Pattern, float]]:
    return [
        (phrase, re.compile(r"\b" + re.escape(phrase) + r"\b"), weight)
        for phrase, weight in phrases.items()
    ]


class SentimentExtractor:
    """Lexicon-based sentiment polarity over every message in the unit."""

    factor_type = FactorType.SENTIMENT_ANALYSIS

    POSITIVE_WORDS = {
        "happy": 0.8, "glad": 0.6, "joy": 0.8, "joyful": 0.8, "excited": 0.7,
        "wonderful": 0.8, "great": 0.6, "amazing": 0.8, "awesome": 0.7,
        "fantastic": 0.8, "love": 0.8, "loved": 0.8, "grateful": 0.7,
        "thankful": 0.7, "hopeful": 0.6, "proud": 0.7, "relieved": 0.6,
        "calm": 0.5, "peaceful": 0.6, "celebrate": 0.7, "good": 0.4,
        "nice": 0.4, "beautiful": 0.6, "delighted": 0.8, "supportive": 0.6,
        "comforted": 0.6, "content": 0.4, "safe": 0.4, "fun": 0.5,
        "better": 0.4, "kind": 0.4, "optimistic": 0.6, "confident": 0.5,
    }

    NEGATIVE_WORDS = {
        "sad": 0.7, "angry": 0.8, "upset": 0.7, "terrible": 0.8, "awful": 0.8,
        "horrible": 0.8, "hate": 0.8, "lonely": 0.7, "depressed": 0.9,
        "anxious": 0.7, "worried": 0.6, "scared": 0.7, "afraid": 0.7,
        "hurt": 0.7, "frustrated": 0.6, "annoyed": 0.5, "disappointed": 0.6,
        "miserable": 0.9, "stressed": 0.6, "tired": 0.4, "exhausted": 0.6,
        "cry": 0.6, "crying": 0.7, "hopeless": 0.9, "bad": 0.5, "worse": 0.6,
        "worst": 0.8, "pain": 0.6, "furious": 0.9, "guilty": 0.6,
        "ashamed": 0.7, "overwhelmed": 0.7, "lost": 0.4,
    }

    AMPLIFIERS = {
        "very": 1.3, "extremely": 1.5, "incredibly": 1.4, "so": 1.2,
        "really": 1.2, "absolutely": 1.3, "totally": 1.2, "deeply": 1.3,
    }

    NEGATORS = {"not", "no", "never", "don't", "dont", "isn't", "wasn't", "won't", "can't", "didn't", "nothing"}

    NEGATION_WINDOW = 3
    NEGATION_DAMPING = 0.8

    def _tally(self, text: str) -> Tuple[float, float, List[str]]:
        positive = 0.0
        negative = 0.0
        evidence: List[str] = []
        negation_window = 0
        amplifier = 1.0

        for token in _TOKEN_RE.findall(text.lower()):
            if token in self.NEGATORS:
                negation_window = self.NEGATION_WINDOW
                continue

            if token in self.AMPLIFIERS:
                amplifier = self.AMPLIFIERS[token]
                continue

            if token in self.POSITIVE_WORDS:
                weight = self.POSITIVE_WORDS[token] * amplifier
                if negation_window > 0:
                    negative += weight * self.NEGATION_DAMPING
                    evidence.append(f"not {token}")
                else:
                    positive += weight
                    evidence.append(token)
                amplifier = 1.0
            elif token in self.NEGATIVE_WORDS:
                weight = self.NEGATIVE_WORDS[token] * amplifier
                if negation_window > 0:
                    positive += weight * self.NEGATION_DAMPING
                    evidence.append(f"not {token}")
                else:
                    negative += weight
                    evidence.append(token)
                amplifier = 1.0

            if negation_window > 0:
                negation_window -= 1

        return positive, negative, evidence

    def message_balance(self, text: str) -> Optional[float]:
        """Polarity of one message in [-1, 1], or None without sentiment words."""
        positive, negative, _ = self._tally(text)
        total = positive + negative
        if total <= 0:
            return None
        return (positive - negative) / total

    def extract(self, unit: ConversationalUnit) -> FactorSignal:
        positive, negative, evidence = self._tally(unit.content)
        score = balance_to_score(positive, negative, len(evidence))
        return FactorSignal(
            type=self.factor_type,
            internal_score=score,
            evidence=_unique(evidence),
            description=f"Sentiment leans {_lean(score)} across {len(evidence)} sentiment words",
        )


class _PhraseExtractor:
    """Shared matching for extractors driven by positive/negative phrase tables."""

    factor_type: FactorType
    POSITIVE_PHRASES: Dict[str, float] = {}
    NEGATIVE_PHRASES: Dict[str, float] = {}
    label = "markers"

    def __init__(self):
        self._positive = _compile_phrases(self.POSITIVE_PHRASES)
        self._negative = _compile_phrases(self.NEGATIVE_PHRASES)

    def _match(self, text: str) -> Tuple[float, float, List[str], int, int]:
        lowered = text.lower()
        positive = negative = 0.0
        evidence: List[str] = []
        pos_hits = neg_hits = 0
        for phrase, pattern, weight in self._positive:
            count = len(pattern.findall(lowered))
            if count:
                positive += weight * count
                pos_hits += count
                evidence.append(phrase)
        for phrase, pattern, weight in self._negative:
            count = len(pattern.findall(lowered))
            if count:
                negative += weight * count
                neg_hits += count
                evidence.append(phrase)
        return positive, negative, evidence, pos_hits, neg_hits

    def extract(self, unit: ConversationalUnit) -> FactorSignal:
        positive, negative, evidence, pos_hits, neg_hits = self._match(unit.content)
        score = balance_to_score(positive, negative, pos_hits + neg_hits)
        return FactorSignal(
            type=self.factor_type,
            internal_score=score,
            evidence=_unique(evidence),
            description=f"{pos_hits} positive and {neg_hits} negative {self.label}",
        )


class PsychologicalIndicatorExtractor(_PhraseExtractor):
    """Coping, meaning-making and resilience language versus distress language."""

    factor_type = FactorType.PSYCHOLOGICAL_INDICATORS
    label = "psychological indicators"

    POSITIVE_PHRASES = {
        "make a plan": 0.7, "work through": 0.7, "step by step": 0.6,
        "figure it out": 0.6, "feel better": 0.7, "let go": 0.6,
        "breathe": 0.5, "take time": 0.5, "one day at a time": 0.7,
        "getting better": 0.7, "making progress": 0.8, "proud of": 0.7,
        "i can handle": 0.8, "hopeful": 0.7, "hope": 0.6, "grateful": 0.7,
        "resilient": 0.8, "learned": 0.5, "growth": 0.6, "calm": 0.5,
    }

    NEGATIVE_PHRASES = {
        "overwhelmed": 0.8, "hopeless": 1.0, "can't cope": 1.0,
        "cannot cope": 1.0, "exhausted": 0.6, "anxious": 0.7, "panic": 0.8,
        "worthless": 1.0, "alone": 0.6, "stressed": 0.6, "can't sleep": 0.7,
        "falling apart": 0.9, "give up": 0.8, "trapped": 0.8,
        "burned out": 0.8, "scared": 0.6, "depressed": 0.9, "numb": 0.7,
    }


class RelationshipContextExtractor(_PhraseExtractor):
    """Connection versus conflict markers between participants."""

    factor_type = FactorType.RELATIONSHIP_CONTEXT
    label = "relationship markers"

    POSITIVE_PHRASES = {
        "thank you": 0.6, "thanks": 0.5, "appreciate": 0.7, "love you": 0.9,
        "together": 0.5, "support": 0.6, "supportive": 0.7,
        "here for you": 0.9, "i understand": 0.6, "miss you": 0.6,
        "proud of you": 0.8, "care about": 0.7, "glad you": 0.6,
        "you're right": 0.5,
    }

    NEGATIVE_PHRASES = {
        "you never": 0.8, "you always": 0.7, "leave me alone": 0.9,
        "don't care": 0.7, "whatever": 0.5, "shut up": 1.0,
        "your fault": 0.9, "blame": 0.6, "ignored": 0.7, "ignore me": 0.7,
        "not listening": 0.7, "stop it": 0.6, "fed up": 0.7,
    }


class ConversationalFlowExtractor(_PhraseExtractor):
    """
    Discourse-position evidence: how the exchange closes and which way mood
    moved between its opening and its closing.
    """

    factor_type = FactorType.CONVERSATIONAL_FLOW
    label = "closing markers"

    POSITIVE_PHRASES = {
        "that helps": 0.7, "feel better": 0.8, "thanks": 0.5,
        "thank you": 0.6, "glad we talked": 0.9, "makes sense": 0.5,
        "sounds good": 0.5, "good night": 0.4, "talk soon": 0.4,
        "see you": 0.3, "love you": 0.6,
    }

    NEGATIVE_PHRASES = {
        "i'm done": 0.9, "forget it": 0.8, "whatever": 0.6,
        "leave me alone": 0.9, "i give up": 0.9, "never mind": 0.6,
        "i don't care": 0.7,
    }

    TREND_THRESHOLD = 0.5

    def __init__(self, sentiment: Optional[SentimentExtractor] = None):
        super().__init__()
        self.sentiment = sentiment or SentimentExtractor()

    def _trend(self, texts: Sequence[str]) -> Optional[float]:
        balances = [b for b in (self.sentiment.message_balance(t) for t in texts) if b is not None]
        if len(balances) < 2:
            return None
        half = len(balances) // 2
        opening = sum(balances[:half]) / half
        closing = sum(balances[half:]) / (len(balances) - half)
        return closing - opening

    def extract(self, unit: ConversationalUnit) -> FactorSignal:
        texts = [m.text for m in unit.messages if m.text.strip()]
        if not texts:
            return FactorSignal(self.factor_type, NEUTRAL_SCORE, (), "No message sequence to follow")

        closing_start = len(texts) - max(1, len(texts) // 3)
        closing_text = " ".join(texts[closing_start:])
        positive, negative, evidence, pos_hits, neg_hits = self._match(closing_text)
        hits = pos_hits + neg_hits

        trend = self._trend(texts)
        if trend is not None and abs(trend) >= self.TREND_THRESHOLD:
            if trend > 0:
                positive += trend
                evidence.append("mood lifted by the close")
            else:
                negative += -trend
                evidence.append("mood dropped by the close")
            hits += 1

        score = balance_to_score(positive, negative, hits)
        return FactorSignal(
            type=self.factor_type,
            internal_score=score,
            evidence=_unique(evidence),
            description=f"Conversation closes {_lean(score)} ({hits} flow markers)",
        )


def default_extractors() -> List:
    return [
        SentimentExtractor(),
        PsychologicalIndicatorExtractor(),
        RelationshipContextExtractor(),
        ConversationalFlowExtractor(),
    ]


def extract_signals(unit: ConversationalUnit, extractors: Sequence) -> List[FactorSignal]:
    """
    Run every extractor and keep the signals that found evidence.

    Raises:
        LowSignalInput: If the unit is empty or no extractor found evidence
    """
    if unit.is_empty:
        raise LowSignalInput(f"Unit {unit.id} has no content", details={"unit_id": unit.id})

    signals = [extractor.extract(unit) for extractor in extractors]
    with_evidence = [s for s in signals if s.has_evidence]
    if not with_evidence:
        raise LowSignalInput(
            f"Unit {unit.id} produced no factor evidence",
            details={"unit_id": unit.id, "word_count": unit.word_count},
        )
    return with_evidence
