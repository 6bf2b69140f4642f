"""
Services

- entity/ - Serialized entity store holding the door status
- orchestration/ - Durable workflow host and the door monitor workflow
- notifications/ - Outbound SMS activity
- ingestion.py - State report handling
"""
