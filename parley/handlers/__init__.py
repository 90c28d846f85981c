"""Event handlers for Parley.

Handlers listen to bus events and react asynchronously.
Each handler registers itself on specific event types during __init__.
"""
