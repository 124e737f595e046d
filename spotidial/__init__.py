"""
SpotiDial: bridges a Spotify account to an M5Dial display over MQTT.

Layout:
  bridge.py    : orchestrator; startup/shutdown, command dispatch, track changes
  detector.py  : now-playing poll loop and track change detection
  artwork.py   : cover download + transcode for the 240x240 display
  spotify/     : token store, OAuth session, Web API gateway
  lib/         : config, MQTT transport, systemd watchdog
  remote.py    : command-line client for poking the bridge over MQTT
"""

__version__ = "1.0.0"
