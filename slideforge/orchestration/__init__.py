"""
Orchestration Package

Task graph, model routing, per-request execution context, and the DAG
executor that drives the slideforge agents to a finished deck.
"""
