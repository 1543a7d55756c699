"""
KV Store - JSON document store on Cloud Spanner.

This package implements a key-value service built on:
- One table of opaque JSON documents keyed by UUID
- Cloud Spanner as the backing store (SQLite for local development)
- Commit timestamps for created_at / updated_at

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Client    │────▶│    HTTP     │────▶│    KvService    │
    │             │     │   Server    │     │                 │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                        ┌──────────────┬─────────────┼──────────────┐
                        │              │             │              │
                        ▼              ▼             ▼              ▼
                  ┌───────────┐  ┌───────────┐ ┌───────────┐ ┌───────────┐
                  │Provisioner│  │RecordStore│ │ListEngine │ │HealthProbe│
                  └─────┬─────┘  └─────┬─────┘ └─────┬─────┘ └─────┬─────┘
                        └──────────────┴──────┬──────┴─────────────┘
                                              ▼
                                    ┌───────────────────┐
                                    │   StoreHandle     │
                                    │ (Spanner/SQLite)  │
                                    └───────────────────┘

Invariants:
    - Provisioning completes before any request is served
    - Exactly zero or one record exists per key
    - created_at is set once, by the store's commit clock

How to change safely:
    - Keep the table schema identical across backends
    - New query shapes go through QueryBuilder, never raw strings
"""

from ._version import __version__

__all__ = ["__version__"]
