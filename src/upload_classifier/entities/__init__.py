"""Entity state store, ordering gate and result application guard.

All state for one entity key lives in a single ``entity_records`` row. The
gate is the only component that compares ordering markers; the guard is the
only component that writes task outcomes, and it does so with a
compare-and-set on ``(entity_key, generation_id)``.
"""
