"""
Demand-signal aggregation.

Modules
-------
regions    : normalize_region() + infer_resource_type() — request text → cell key.
aggregator : aggregate_demand() → DemandAggregate (pressure cells + timeline
             point) and the bounded DemandTimeline ring.
"""
