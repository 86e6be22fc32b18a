"""Text normalisation ahead of synthesis (Ukrainian voice)."""

from __future__ import annotations

import re

_ONES = ["", "один", "два", "три", "чотири", "п'ять", "шість", "сім", "вісім", "дев'ять"]
_TEENS = [
    "десять",
    "одинадцять",
    "дванадцять",
    "тринадцять",
    "чотирнадцять",
    "п'ятнадцять",
    "шістнадцять",
    "сімнадцять",
    "вісімнадцять",
    "дев'ятнадцять",
]
_TENS = [
    "", "", "двадцять", "тридцять", "сорок",
    "п'ятдесят", "шістдесят", "сімдесят", "вісімдесят", "дев'яносто",
]
_HUNDREDS = [
    "", "сто", "двісті", "триста", "чотириста",
    "п'ятсот", "шістсот", "сімсот", "вісімсот", "дев'ятсот",
]

MAX_SPOKEN_NUMBER = 10000

_STANDALONE_PLUS_RE = re.compile(r"(^|\s)\+(?=\s|$)")
_STANDALONE_MINUS_RE = re.compile(r"(^|\s)-(?=\s|$)")
_NUMBER_RE = re.compile(r"\b\d+\b")
_SPACES_RE = re.compile(r"\s+")

STRESS_MARK = "\u0301"


def number_to_words(num: int) -> str:
    """Spell out an integer below ten thousand (plus 10000 itself)."""
    if num == 0:
        return "нуль"
    if num < 0:
        return "мінус " + number_to_words(-num)

    words: list[str] = []

    if num >= 1000:
        thousand, num = divmod(num, 1000)
        if thousand == 1:
            words.append("тисяча")
        elif thousand == 2:
            words.append("дві тисячі")
        elif thousand in (3, 4):
            words.append(_ONES[thousand] + " тисячі")
        elif thousand < 10:
            words.append(_ONES[thousand] + " тисяч")
        else:
            words.append(number_to_words(thousand) + " тисяч")

    if num >= 100:
        hundred, num = divmod(num, 100)
        words.append(_HUNDREDS[hundred])

    if num >= 20:
        ten, num = divmod(num, 10)
        words.append(_TENS[ten])
        if num > 0:
            words.append(_ONES[num])
    elif num >= 10:
        words.append(_TEENS[num - 10])
    elif num > 0:
        words.append(_ONES[num])

    return " ".join(words)


def _spell_number(match: re.Match[str]) -> str:
    value = int(match.group(0))
    if value <= MAX_SPOKEN_NUMBER:
        return number_to_words(value)
    return match.group(0)


def preprocess_text(text: str) -> str:
    """Spell out numbers and math signs, turn inline ``+`` into stress marks."""
    processed = _STANDALONE_PLUS_RE.sub(r"\1плюс", text)
    processed = _STANDALONE_MINUS_RE.sub(r"\1м+інус", processed)
    processed = processed.replace("+", STRESS_MARK)
    processed = _NUMBER_RE.sub(_spell_number, processed)
    return _SPACES_RE.sub(" ", processed).strip()
