"""
Matchmaker Service - Lobby and Match Orchestrator

Responsibilities:
- Lobby queueing, admission control and role requirements
- Team distribution (random, role based, captain draft)
- Expiry and progress supervision of pending lobbies
- Game server provisioning and lifecycle monitoring for matches
- Status callbacks to the integrating client
"""
