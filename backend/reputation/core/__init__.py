"""Reputation engine core primitives.

Import from the submodules directly (`reputation.core.aggregator`, ...);
`app.core.db` depends on `reputation.core.errors`, so this package must not
eagerly import modules that depend on `app.core.db`.
"""
