"""Launch orchestrator for the containerised forum service.

The package resolves the container environment, waits for the database,
rebuilds the forum when its dependency manifest changed, patches the built
admin assets and finally hands control to (or supervises) the forum
process.
"""

__version__ = "0.1.0"
