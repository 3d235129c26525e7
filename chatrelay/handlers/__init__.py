"""
chatrelay: Event trigger handlers.

Each trigger pairs a pure planner ``(before, after) -> Effect`` with an
async handler that loads the documents, plans, and executes the effect.
"""
