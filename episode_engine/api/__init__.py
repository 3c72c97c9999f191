"""
API Layer

RESPONSIBILITY: HTTP operator surface over EpisodePipelineBackend
MUST NOT: Contain pipeline logic; every endpoint calls one engine operation
"""
