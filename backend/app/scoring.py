MIN_HINTS = 1
MAX_HINTS = 5
MIN_CORRECT_POINTS = 1
MAX_CORRECT_POINTS = 5


def calculate_points(hints_used: int, is_correct: bool) -> int:
    """Points for one round: 5 on the first hint down to 1 on the last, 0 when wrong."""
    if not is_correct:
        return 0
    return max(MIN_CORRECT_POINTS, min(MAX_CORRECT_POINTS, 6 - hints_used))
