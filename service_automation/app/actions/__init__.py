"""
Actions package.

- executor: one attempt of one action against the domain gateway, with
  failures classified as transient or permanent.
- retry: bounded exponential-backoff retry over the executor.
- gateway: httpx client for the domain API.
"""
