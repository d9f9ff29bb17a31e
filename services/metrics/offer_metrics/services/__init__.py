"""Business logic services.

Services contain all business logic and are called by routes.
Pipeline stages take immutable inputs and return field deltas; the
orchestrator is the only writer of offer metric records.
"""
