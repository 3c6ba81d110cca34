"""Game domain services: quiz import and authoring, registration, and the
session phase state machine.

Routes and socket handlers call into these; they talk to storage only
through the Repository.
"""
