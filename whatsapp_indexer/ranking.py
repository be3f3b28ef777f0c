"""Merge vector and lexical results into one ranked, de-duplicated list."""

from whatsapp_indexer.models import Message, SearchResult, VectorHit


def merge(
    vector_hits: list[VectorHit],
    lexical_messages: list[Message],
    limit: int | None = None,
) -> list[SearchResult]:
    """
    Key both result sets by message id.

    - in both: source "both", vector score, display fields from the lexical row
    - vector only: source "vector", relevance = similarity
    - lexical only: source "database", relevance 0.0

    Ordered by relevance descending, then timestamp descending.
    """
    scores: dict[str, float] = {}
    merged: dict[str, SearchResult] = {}
    for hit in vector_hits:
        mid = hit.metadata.message_id
        if mid in scores and scores[mid] >= hit.score:
            continue
        scores[mid] = hit.score
        merged[mid] = SearchResult.from_metadata(hit.metadata, relevance_score=hit.score, source="vector")
    for message in lexical_messages:
        if message.id in scores:
            merged[message.id] = SearchResult.from_message(
                message, relevance_score=scores[message.id], source="both"
            )
        elif message.id not in merged:
            merged[message.id] = SearchResult.from_message(message, relevance_score=0.0, source="database")
    ranked = sorted(merged.values(), key=lambda r: (-(r.relevance_score or 0.0), -r.timestamp))
    return ranked[:limit] if limit is not None else ranked
