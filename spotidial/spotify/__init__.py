"""Spotify side of the bridge: token storage, OAuth session, Web API gateway."""
