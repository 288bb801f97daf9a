"""Fuzzy comparison of a typed guess against a song's title or artist.

Real catalogue titles carry noise the player should not have to type:
"(Remastered 2011)", "[Live]", "- Single Version", "feat. Somebody". The
checks below run in order and the first hit wins.
"""

import re

MIN_CONTAINMENT_RATIO = 0.6

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_BRACKETED = re.compile(r"\([^)]*\)|\[[^\]]*\]")
# " - ", " by ", " feat. ", " featuring " as standalone tokens
_SEPARATOR = re.compile(r"\s+(?:by|feat\.?|featuring|-)\s+", re.IGNORECASE)


def normalize(text: str) -> str:
    text = _NON_WORD.sub("", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def strip_brackets(text: str) -> str:
    return _WHITESPACE.sub(" ", _BRACKETED.sub("", text)).strip()


def strip_attribution(text: str) -> str:
    return _SEPARATOR.split(text, maxsplit=1)[0].strip()


def is_match(guess: str, answer: str) -> bool:
    if not guess or not answer:
        return False

    norm_guess = normalize(guess)
    norm_answer = normalize(answer)
    if not norm_guess or not norm_answer:
        return False

    if norm_guess == norm_answer:
        return True

    clean_answer = normalize(strip_brackets(answer))
    clean_guess = normalize(strip_brackets(guess))

    if clean_answer and clean_guess == clean_answer:
        return True
    if norm_guess == clean_answer or clean_guess == norm_answer:
        return True

    guess_head = normalize(strip_attribution(strip_brackets(guess)))
    answer_head = normalize(strip_attribution(strip_brackets(answer)))
    if guess_head and guess_head == answer_head:
        return True

    return _contains_enough(norm_guess, clean_guess, norm_answer, clean_answer)


def _contains_enough(norm_guess: str, clean_guess: str, norm_answer: str, clean_answer: str) -> bool:
    answer_length = max(len(norm_answer), len(clean_answer))
    for candidate in {norm_guess, clean_guess}:
        if not candidate:
            continue
        overlaps = any(
            variant and (candidate in variant or variant in candidate)
            for variant in (norm_answer, clean_answer)
        )
        if not overlaps:
            continue
        shorter = min(len(candidate), answer_length)
        longer = max(len(candidate), answer_length)
        if shorter / longer >= MIN_CONTAINMENT_RATIO:
            return True
    return False
