"""
Pool Ledger Property Suite

Properties every build of the pool ledger must hold, checked with
hypothesis over generated inputs:
1. fifo_properties.py - Lot consumption order and quantity conservation
2. batching_properties.py - Batch shape and per-batch failure isolation
3. carry_over_properties.py - Fulfilled plus carried volume equals outstanding
4. replay_determinism.py - Same events, same state; replays change nothing
"""
