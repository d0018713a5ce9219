"""
Collaborators of the orchestration core: data-source registry, tool
executors, clarification store and the dashboard service.
"""
