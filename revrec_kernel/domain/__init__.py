"""Pure domain helpers for the kernel: clock, currency registry."""
