"""Aggregate figures and discussion hints over revealed card values."""

from __future__ import annotations

import math
from collections import Counter
from typing import Iterable

from .models import EstimationPatterns, Result, RevealedCard, Room, Round, Statistics, VarianceAnalysis
from .state import DECK

UNKNOWN_PARTICIPANT = "Unknown"

HIGH_VARIANCE_PROMPT = "High variance detected! Consider discussing the story requirements and complexity."
MODERATE_VARIANCE_PROMPT = "Moderate variance detected. Team discussion may help reach consensus."


def compute_result(room: Room, round_: Round) -> Result:
    """Pair every submission with its participant's name and summarise the values."""
    names = {participant.token: participant.name for participant in room.participants}
    cards = [
        RevealedCard(token=token, name=names.get(token, UNKNOWN_PARTICIPANT), value=value)
        for token, value in round_.submissions.items()
    ]
    if not cards:
        return Result(cards=[], statistics=Statistics(average=0, median="0", range=[], has_variance=False))
    return Result(cards=cards, statistics=compute_statistics([card.value for card in cards]))


def compute_statistics(values: list[str]) -> Statistics:
    numeric, non_numeric = partition_values(values)

    average = 0.0
    median = "0"
    if numeric:
        average = sum(numeric) / len(numeric)
        median = format_number(_median(numeric))
    elif non_numeric:
        median = non_numeric[0]

    return Statistics(
        average=_round_half_up(average),
        median=median,
        range=sort_by_deck_order(set(values)),
        has_variance=has_significant_variance(numeric),
    )


def _round_half_up(value: float) -> float:
    """Two decimal places, halves rounded up."""
    return math.floor(value * 100 + 0.5) / 100


def partition_values(values: Iterable[str]) -> tuple[list[float], list[str]]:
    numeric: list[float] = []
    non_numeric: list[str] = []
    for value in values:
        number = parse_number(value)
        if number is None:
            non_numeric.append(value)
        else:
            numeric.append(number)
    return numeric, non_numeric


def parse_number(value: str) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def format_number(number: float) -> str:
    if number.is_integer():
        return str(int(number))
    return repr(number)


def _median(numbers: list[float]) -> float:
    ordered = sorted(numbers)
    middle = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[middle - 1] + ordered[middle]) / 2
    return ordered[middle]


def sort_by_deck_order(values: Iterable[str]) -> list[str]:
    """Deck members in deck order first, anything else alphabetically after."""
    positions = {card: index for index, card in enumerate(DECK)}
    return sorted(values, key=lambda value: (value not in positions, positions.get(value, 0), value))


def has_significant_variance(numbers: list[float]) -> bool:
    # Both thresholds count: 1 vs 3 is significant by ratio, 20 vs 21 is not.
    if len(numbers) < 2:
        return False
    low, high = min(numbers), max(numbers)
    return (high - low) > 2 or (low > 0 and high / low > 2)


def card_distribution(values: Iterable[str]) -> dict[str, int]:
    return dict(Counter(values))


def analyze_variance(values: list[str]) -> VarianceAnalysis:
    numeric = [number for number in (parse_number(value) for value in values) if number is not None]
    if not has_significant_variance(numeric):
        return VarianceAnalysis(has_variance=False, level="none", discussion_prompt="", highlighted_cards=[])

    low, high = min(numeric), max(numeric)
    spread = high - low
    ratio = high / low if low > 0 else 0
    if spread > 8 or ratio > 5:
        level, prompt = "high", HIGH_VARIANCE_PROMPT
    else:
        level, prompt = "moderate", MODERATE_VARIANCE_PROMPT

    # Every extreme submission is flagged, duplicates included.
    highlighted = [value for value in values if parse_number(value) in (low, high)]
    return VarianceAnalysis(has_variance=True, level=level, discussion_prompt=prompt, highlighted_cards=highlighted)


def analyze_patterns(values: list[str]) -> EstimationPatterns:
    distribution = card_distribution(values)
    total = len(values)
    consensus = len(distribution) == 1

    majority_card = None
    for card, count in distribution.items():
        if count > total / 2:
            majority_card = card
            break

    outliers: list[str] = []
    if total >= 3:
        outliers = [card for card, count in distribution.items() if count == 1]

    color_coding: dict[str, str] = {}
    for card in sort_by_deck_order(distribution):
        if consensus:
            color_coding[card] = "consensus"
        elif card == majority_card:
            color_coding[card] = "majority"
        elif card in outliers:
            color_coding[card] = "outlier"
        else:
            color_coding[card] = "normal"

    return EstimationPatterns(
        consensus=consensus,
        majority_card=majority_card,
        outliers=sort_by_deck_order(outliers),
        color_coding=color_coding,
    )
