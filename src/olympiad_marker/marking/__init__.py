"""Marking queue: scheduler, per-job workers and the scoring oracle.

Each uploaded paper is one job; each problem of the marking scheme is one
part. A bounded pool of worker threads marks jobs part by part against a
rate-limited oracle, checkpointing after every part so a stop, a quota hit or
a crash never costs more than the part in flight.
"""
