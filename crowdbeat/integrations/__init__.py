"""crowdbeat.integrations — External service gateway modules.

All outbound HTTP calls to collaborating services go through a gateway in
this package, never via bare `requests` calls in services or blueprints.

Every gateway call is:
  - Authenticated (service token injected by the gateway)
  - Retried with backoff
  - Circuit-broken to prevent cascade failures
  - Returned as a GatewayResult, never raised

Current gateways:
  identity_gateway.IdentityGateway — user profiles and reputation awards
"""
