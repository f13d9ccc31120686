"""
RankSheet HTTP API

Admin job endpoints and public sheet reads over the application context.
"""
