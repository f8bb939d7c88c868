"""bear-cds: challenge deployment system.

Deploys a catalog of CTF challenges to Fly.io machines and fronts them with a
Caddy ingress:
 - builds and pushes one image per challenge container
 - reconciles one remote machine per container (create or update, never delete)
 - derives HTTP and TCP routes from the declared exposures
 - pushes one merged Caddy config to the ingress machine
"""

__version__ = "0.2.0"
