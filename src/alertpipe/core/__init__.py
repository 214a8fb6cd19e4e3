"""Domain core: registry, expressions, rules, engine and router.

Nothing in this package performs I/O beyond reading configuration files.
"""
