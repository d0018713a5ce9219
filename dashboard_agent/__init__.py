"""
Dashboard agent: plans natural-language dashboard requests into sub-queries
and streams their execution.
"""
