"""Resolution pipeline and answer matcher."""

from .matcher import find_unfollowed_cname, match_records, parse_records, record_matches
from .pipeline import PipelineSettings, ResolutionPipeline, cache_key

__all__ = [
    "PipelineSettings",
    "ResolutionPipeline",
    "cache_key",
    "find_unfollowed_cname",
    "match_records",
    "parse_records",
    "record_matches",
]
