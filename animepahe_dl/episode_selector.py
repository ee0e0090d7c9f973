"""
Episode selection expressions.

Comma-separated tokens, each optionally negated with '!':
    7       single episode
    1-5     inclusive range
    10-     episode 10 to last available
    -5      first available up to episode 5
    *       everything available
    L3      latest 3 available
    F5      first 5 available

Result = sorted(included - excluded), restricted to available episodes.
"""

import logging
import re
from typing import List, Sequence

from animepahe_dl.errors import EmptySelection


logger = logging.getLogger(__name__)

ALL = re.compile(r'^\*$')
LATEST = re.compile(r'^L(\d+)$')
FIRST = re.compile(r'^F(\d+)$')
OPEN_END = re.compile(r'^(\d+)-$')
OPEN_START = re.compile(r'^-(\d+)$')
RANGE = re.compile(r'^(\d+)-(\d+)$')
SINGLE = re.compile(r'^(\d+)$')


def split_tokens(expression: str) -> List[str]:
    tokens = []
    for part in expression.split(','):
        part = re.sub(r'\s+', '', part).strip('"\'')
        if part:
            tokens.append(part)
    return tokens


def expand_token(pattern: str, available: Sequence[int]) -> List[int]:
    """
    Episodes matched by one (non-negated) token.
    Problems are logged and yield an empty list.
    """
    if ALL.match(pattern):
        return list(available)

    match = LATEST.match(pattern) or FIRST.match(pattern)
    if match:
        count = int(match.group(1))
        kind = 'latest' if pattern.startswith('L') else 'first'
        if count <= 0:
            logger.warning(f"  Invalid number for {kind.title()} N: {pattern}. Must be > 0.")
            return []
        if count > len(available):
            logger.warning(f"  Requested {kind} {count}, but only {len(available)} available. Adding all.")
            return list(available)
        return list(available[-count:]) if kind == 'latest' else list(available[:count])

    match = OPEN_END.match(pattern)
    if match:
        start = int(match.group(1))
        return [ep for ep in available if ep >= start]

    match = OPEN_START.match(pattern)
    if match:
        end = int(match.group(1))
        return [ep for ep in available if ep <= end]

    match = RANGE.match(pattern)
    if match:
        start, end = int(match.group(1)), int(match.group(2))
        if start > end:
            logger.warning(f"  Invalid range '{pattern}'. Skipping.")
            return []
        return [ep for ep in available if start <= ep <= end]

    match = SINGLE.match(pattern)
    if match:
        episode = int(match.group(1))
        if episode not in available:
            logger.warning(f"  Episode {episode} specified but not found in available episode list.")
            return []
        return [episode]

    logger.warning(f"  Unrecognized pattern '{pattern}'. Skipping.")
    return []


def evaluate(expression: str, available: Sequence[int]) -> List[int]:
    """
    Main function: selection expression -> sorted unique episode numbers.

    Raises EmptySelection when nothing was included and no exclusion was
    asked for. An empty result caused by exclusions is returned as [].
    """
    available = sorted(set(available))
    include, exclude = set(), set()
    has_exclusion = False

    logger.info(f"⟳ Parsing episode selection string: {expression}")
    if available:
        logger.info(f"  Available episodes range from {available[0]} to {available[-1]} "
                    f"(Total: {len(available)})")

    for token in split_tokens(expression):
        if token.startswith('!'):
            has_exclusion = True
            pattern = token[1:]
            logger.info(f"  Processing exclusion pattern: {pattern}")
            exclude.update(expand_token(pattern, available))
        else:
            logger.info(f"  Processing inclusion pattern: {token}")
            include.update(expand_token(token, available))

    logger.info(f"  Processed {len(include)} unique include directives and "
                f"{len(exclude)} unique exclude directives.")

    selected = sorted(include - exclude)
    if not selected:
        if not include and not has_exclusion:
            raise EmptySelection(f"No episodes selected. Please check your selection string: '{expression}'")
        logger.warning(f"No episodes remaining after applying all inclusion/exclusion rules for: '{expression}'")
    return selected
