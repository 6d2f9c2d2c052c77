"""
Pure calculation engines.

Engines take plain values and return frozen results: no sessions, no
clock, no I/O.  Services feed them from the store and persist what they
return.
"""
