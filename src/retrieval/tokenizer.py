"""Code-aware tokenization shared by the lexical index, graph and reranker.

Handles:
- camelCase splitting (HTTPClient -> http, client)
- snake_case splitting (get_user -> get, user)
- Whole identifiers kept alongside their parts (UserService -> userservice, user, service)
- Hex code preservation (0x884 -> 0x884)
- Minimum token length filtering
- Optional stopword removal

Author: Hay Hoffman
"""

import re

from settings import (
    BM25_KEEP_HEX_CODES,
    BM25_MIN_TOKEN_LENGTH,
    BM25_REMOVE_STOPWORDS,
    BM25_SPLIT_CAMELCASE,
    BM25_SPLIT_SNAKE_CASE,
    BM25_STOPWORDS,
)

__all__ = ["tokenize_code_aware", "split_identifier"]

# Pre-compiled regex patterns for tokenization
_HEX_PATTERN = re.compile(r'0x[0-9A-Fa-f]+')
_WORD_SPLIT_PATTERN = re.compile(r'[^a-zA-Z0-9_]+')
_CAMEL_CASE_PATTERN_1 = re.compile(r'([A-Z]+)([A-Z][a-z])')  # HTTPSServer -> HTTPS Server
_CAMEL_CASE_PATTERN_2 = re.compile(r'([a-z\d])([A-Z])')  # lowercase -> uppercase


def split_identifier(
    word: str,
    split_camelcase: bool = BM25_SPLIT_CAMELCASE,
    split_snake_case: bool = BM25_SPLIT_SNAKE_CASE,
) -> list[str]:
    """Split one identifier into its camelCase / snake_case parts (original case)."""
    if split_camelcase:
        camel_parts = _CAMEL_CASE_PATTERN_1.sub(r'\1 \2', word)
        camel_parts = _CAMEL_CASE_PATTERN_2.sub(r'\1 \2', camel_parts)
        word_parts = camel_parts.split()
    else:
        word_parts = [word]

    parts: list[str] = []
    for part in word_parts:
        if split_snake_case and '_' in part:
            parts.extend(p for p in part.split('_') if p)
        elif part.strip('_'):
            parts.append(part)
    return parts


def tokenize_code_aware(
    text: str,
    min_token_length: int = BM25_MIN_TOKEN_LENGTH,
    split_camelcase: bool = BM25_SPLIT_CAMELCASE,
    split_snake_case: bool = BM25_SPLIT_SNAKE_CASE,
    keep_hex_codes: bool = BM25_KEEP_HEX_CODES,
    remove_stopwords: bool = BM25_REMOVE_STOPWORDS,
) -> list[str]:
    """Tokenize text with code-aware rules.

    Tokens are emitted in text order, so the output can be used for phrase
    matching. A compound identifier yields the whole identifier first, then
    its parts.

    Args:
        text: Text to tokenize
        min_token_length: Tokens shorter than this are dropped (hex codes excepted)
        split_camelcase: Split camelCase identifiers
        split_snake_case: Split snake_case identifiers
        keep_hex_codes: Keep hex literals as single tokens
        remove_stopwords: Drop common English stopwords

    Returns:
        list of lowercase tokens
    """
    tokens: list[str] = []

    if keep_hex_codes:
        # Preserve hex codes in place, tokenizing the text around them
        pieces = _HEX_PATTERN.split(text)
        hex_codes = _HEX_PATTERN.findall(text)
    else:
        pieces = [text]
        hex_codes = []

    for index, piece in enumerate(pieces):
        _tokenize_piece(
            piece,
            tokens,
            min_token_length,
            split_camelcase,
            split_snake_case,
            remove_stopwords,
        )
        if index < len(hex_codes):
            tokens.append(hex_codes[index].lower())

    return tokens


def _tokenize_piece(
    text: str,
    tokens: list[str],
    min_token_length: int,
    split_camelcase: bool,
    split_snake_case: bool,
    remove_stopwords: bool,
) -> None:
    """Append tokens of a hex-free text piece to ``tokens``."""
    for word in _WORD_SPLIT_PATTERN.split(text):
        if not word:
            continue

        parts = split_identifier(word, split_camelcase, split_snake_case)
        candidates = [word] + parts if len(parts) > 1 else parts

        for token in candidates:
            token_lower = token.lower()

            # Skip if too short
            if len(token_lower) < min_token_length:
                continue

            # Skip stopwords
            if remove_stopwords and token_lower in BM25_STOPWORDS:
                continue

            tokens.append(token_lower)
