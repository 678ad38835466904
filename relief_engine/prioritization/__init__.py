"""
Priority scoring: converts open rescue requests into a ranked, explainable
priority queue.

Modules
-------
geo    : haversine_km() + nearest_hub() — great-circle helpers, no I/O.
scorer : PriorityComponents dataclass + term functions + build_rationale()
         + score_requests() — pure functions, no DB or I/O.
ranker : rank_snapshots() + top_n() + attach_recommendations().
"""
