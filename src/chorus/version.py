"""
Semantic versioning for the chorus engine and scenario format.
"""

__version__ = "0.4.0"

# Scenario document format version (independent of the engine version)
SCENARIO_FORMAT = "1"
