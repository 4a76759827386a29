"""
Collaborator ports.

Each external dependency the pipeline consumes (model, profiles, memory,
files) is a narrow Protocol with one production adapter and one in-memory
fake, so pipeline logic is tested without network calls.
"""
