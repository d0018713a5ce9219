from dashboard_agent.auth.auth_context import (
    AuthProfile,
    AuthProfileStore,
    AuthResolution,
    InMemoryAuthProfileStore,
    has_enterprise_cues,
    load_auth_store,
    resolve_auth_context
)

__all__ = [
    'AuthProfile',
    'AuthProfileStore',
    'AuthResolution',
    'InMemoryAuthProfileStore',
    'has_enterprise_cues',
    'load_auth_store',
    'resolve_auth_context'
]
