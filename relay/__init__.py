"""
Voice relay: bridges a client WebSocket to a realtime speech service and
routes the service's function calls to a project collaborator.
"""
