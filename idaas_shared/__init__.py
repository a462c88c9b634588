"""
Shared building blocks for the IDaaS session client: exceptions, logging
configuration, data models and abstract interfaces.
"""
