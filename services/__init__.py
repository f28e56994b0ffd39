"""
Services module for the Survey Relay.

Contains session lifecycle, resolution, submission and relay sync logic.
"""
