"""Edit distance and text similarity helpers"""

from typing import Sequence


def levenshtein_distance(a: Sequence, b: Sequence) -> int:
    """Levenshtein distance between two sequences (strings or token lists)"""
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, item_a in enumerate(a, start=1):
        current = [i]
        for j, item_b in enumerate(b, start=1):
            if item_a == item_b:
                current.append(previous[j - 1])
            else:
                current.append(min(
                    previous[j - 1] + 1,  # substitution
                    current[j - 1] + 1,   # insertion
                    previous[j] + 1,      # deletion
                ))
        previous = current
    return previous[-1]


def text_similarity(expected: str, recognized: str) -> float:
    """Word-level similarity in [0, 1] based on Levenshtein distance over tokens"""
    expected_words = expected.lower().split()
    recognized_words = recognized.lower().split()

    max_length = max(len(expected_words), len(recognized_words))
    if max_length == 0:
        return 1.0

    distance = levenshtein_distance(expected_words, recognized_words)
    return 1.0 - distance / max_length
