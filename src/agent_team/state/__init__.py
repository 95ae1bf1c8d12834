"""Shared-state primitives: advisory file locks and atomic JSON documents."""
