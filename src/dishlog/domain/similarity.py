from typing import Iterable, List, Tuple
import re
import unicodedata


def _only_letters_and_spaces(s: str) -> str:
    kept: List[str] = []
    for ch in (s or ""):
        if ch.isalpha() or ch.isspace():
            kept.append(ch)
    out = "".join(kept)
    out = re.sub(r"\s+", " ", out).strip()
    return out


def loose_name(name: str) -> str:
    """Letters-only, case-folded form used to spot near-duplicate names.

    "Joe's Diner" and "Joes  diner" both become "joes diner". This is a
    reporting aid only; identity resolution never uses it.
    """
    raw = (name or "").replace("\u00A0", " ")
    nfc = unicodedata.normalize("NFC", raw)
    return _only_letters_and_spaces(nfc.casefold())


def _levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    la, lb = len(a), len(b)
    if la > lb:
        a, b = b, a
        la, lb = lb, la
    prev = list(range(la + 1))
    for j in range(1, lb + 1):
        cur = [j] + [0] * la
        bj = b[j - 1]
        for i in range(1, la + 1):
            cost = 0 if a[i - 1] == bj else 1
            cur[i] = min(cur[i - 1] + 1, prev[i] + 1, prev[i - 1] + cost)
        prev = cur
    return prev[la]


def find_similar_names(name: str, candidates: Iterable[str], *, ratio: float = 0.2) -> List[Tuple[str, int]]:
    """Return (candidate, distance) pairs whose loose form is close to ``name``.

    Exact case-insensitive matches are excluded (those resolve to the same
    entity anyway). Threshold is ``max(1, round(ratio * longest length))``.
    """
    target = loose_name(name)
    if len(target) < 3:
        return []
    hits: List[Tuple[str, int]] = []
    for candidate in candidates:
        if candidate.strip().casefold() == name.strip().casefold():
            continue
        other = loose_name(candidate)
        if len(other) < 3:
            continue
        dist = _levenshtein(target, other)
        thr = max(1, round(ratio * max(len(target), len(other))))
        if dist <= thr:
            hits.append((candidate, dist))
    hits.sort(key=lambda pair: pair[1])
    return hits

