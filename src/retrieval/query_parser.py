"""Lexical query grammar.

Supported syntax:
- bare terms: ``login credentials``
- quoted phrases: ``"user service"`` (tokens must appear contiguously)
- required terms: ``+login``
- excluded terms: ``-logout``

Terms are run through the same code-aware tokenizer as the indexed text.
"""

import logging
from dataclasses import dataclass, field

from src.exceptions import QuerySyntaxError
from src.retrieval.tokenizer import tokenize_code_aware

logger = logging.getLogger(__name__)

__all__ = ["ParsedQuery", "parse_query"]


@dataclass(frozen=True)
class ParsedQuery:
    """Tokenized query clauses."""

    optional: tuple[str, ...] = ()
    required: tuple[str, ...] = ()
    excluded: tuple[str, ...] = ()
    phrases: tuple[tuple[str, ...], ...] = ()
    raw: str = field(default="", compare=False)

    @property
    def positive_terms(self) -> list[str]:
        """Distinct terms that contribute to the score, in query order."""
        terms = list(self.optional) + list(self.required)
        for phrase in self.phrases:
            terms.extend(phrase)
        return list(dict.fromkeys(terms))

    @property
    def is_empty(self) -> bool:
        return not self.positive_terms

    def matches(self, tokens: list[str], token_set: set[str] | frozenset[str]) -> bool:
        """Check boolean constraints against a document's tokens."""
        if not any(term in token_set for term in self.positive_terms):
            return False
        if any(term not in token_set for term in self.required):
            return False
        if any(term in token_set for term in self.excluded):
            return False
        return all(_contains_phrase(tokens, phrase) for phrase in self.phrases)


def parse_query(query: str) -> ParsedQuery:
    """Parse query text into clauses.

    Args:
        query: Raw query text

    Returns:
        ParsedQuery (possibly empty when the text has no indexable tokens)

    Raises:
        QuerySyntaxError: On unbalanced quotes, empty phrases or dangling operators
    """
    optional: list[str] = []
    required: list[str] = []
    excluded: list[str] = []
    phrases: list[tuple[str, ...]] = []

    position = 0
    length = len(query)

    while position < length:
        char = query[position]

        if char.isspace():
            position += 1
            continue

        operator = None
        if char in "+-":
            operator = char
            position += 1
            # A lone '+'/'-' between words (e.g. "login - credentials") is free text
            if 0 < position - 1 and position < length and query[position].isspace():
                continue
            if position >= length or query[position].isspace():
                raise QuerySyntaxError(
                    f"Dangling '{operator}' operator at position {position - 1}",
                    query=query,
                    position=position - 1,
                )
            char = query[position]

        if char == '"':
            end = query.find('"', position + 1)
            if end == -1:
                raise QuerySyntaxError(
                    f"Unbalanced quote at position {position}",
                    query=query,
                    position=position,
                )
            phrase_tokens = tuple(tokenize_code_aware(query[position + 1:end]))
            if not phrase_tokens:
                raise QuerySyntaxError(
                    f"Empty phrase at position {position}",
                    query=query,
                    position=position,
                )
            if operator == "-":
                excluded.extend(phrase_tokens)
            else:
                phrases.append(phrase_tokens)
            position = end + 1
            continue

        end = position
        while end < length and not query[end].isspace() and query[end] != '"':
            end += 1
        terms = tokenize_code_aware(query[position:end])
        if operator == "+":
            required.extend(terms)
        elif operator == "-":
            excluded.extend(terms)
        else:
            optional.extend(terms)
        position = end

    parsed = ParsedQuery(
        optional=tuple(dict.fromkeys(optional)),
        required=tuple(dict.fromkeys(required)),
        excluded=tuple(dict.fromkeys(excluded)),
        phrases=tuple(phrases),
        raw=query,
    )
    logger.debug(f"Parsed query '{query}': {parsed}")
    return parsed


def _contains_phrase(tokens: list[str], phrase: tuple[str, ...]) -> bool:
    """True if ``phrase`` occurs as a contiguous run in ``tokens``."""
    size = len(phrase)
    if size == 0:
        return True
    first = phrase[0]
    for index in range(len(tokens) - size + 1):
        if tokens[index] == first and tuple(tokens[index:index + size]) == phrase:
            return True
    return False
