"""
Recommendation engine: turns the top of the priority queue into concrete
warehouse dispatch suggestions and executes operator decisions on them.

Modules
-------
generator : select_source() + compute_confidence() + generate_recommendations()
            — pure functions, no DB or I/O.
applier   : RecommendationApplier — transactional apply / dismiss / feedback.
reporter  : write_priority_csv() + write_priority_json()
            + write_recommendation_json() — file output.
"""
