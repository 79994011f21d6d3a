"""Repeated-subsequence detection over executed stage ids."""

from dataclasses import dataclass, field


@dataclass(slots=True)
class LoopResult:
    """Outcome of a loop check.

    ``pattern``/``count``/``occurrences`` are only populated when ``loop`` is true.
    """

    loop: bool
    pattern: list[str] = field(default_factory=list)
    count: int = 0
    occurrences: list[int] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.loop


def detect_loop(ids: list[str], window: int = 2, max_repeats: int = 1) -> LoopResult:
    """Detect a contiguous run of ids that repeats more than ``max_repeats`` times.

    Every slice of length ``window`` is tallied in first-seen order; the first
    slice whose tally exceeds ``max_repeats`` is reported together with the
    offsets where it starts.

    Args:
        ids: Sequence of identifiers, oldest first.
        window: Length of the pattern to look for.
        max_repeats: Occurrences allowed before a pattern counts as a loop.

    Returns:
        LoopResult describing the first offending pattern, if any.
    """
    if window <= 0:
        raise ValueError(f"window must be greater than 0, received {window}")

    tallies: dict[tuple[str, ...], list[int]] = {}
    for start in range(len(ids) - window + 1):
        key = tuple(ids[start:start + window])
        tallies.setdefault(key, []).append(start)

    for key, occurrences in tallies.items():
        if len(occurrences) > max_repeats:
            return LoopResult(
                loop=True,
                pattern=list(key),
                count=len(occurrences),
                occurrences=occurrences,
            )
    return LoopResult(loop=False)
