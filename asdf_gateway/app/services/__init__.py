"""Services package for the gateway.

This package provides:
- Circuit breakers with bulkhead isolation for outbound dependencies
- In-process event bus for state change notifications
- Guarded calls combining rate limiting and circuit breaking
"""
