"""
Business modules built on the revenue kernel.

Modules own the domain semantics (catalog policy, recognition plans,
schedule lifecycle, refund allocation) and talk to storage only through
the kernel ``Store``.
"""
