"""Tests for :mod:`accounts_client`."""
