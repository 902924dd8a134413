"""
Shared, cross-cutting code for the API.

`core/` holds the small building blocks everything else uses: pool config,
the connection pool itself, raw-SQL helpers, the shutdown token and logging.
Store-specific setup (extensions, startup checks) lives in `provisioning/`.
"""
