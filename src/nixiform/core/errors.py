# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/core/errors.py

from __future__ import annotations


class NixiformError(RuntimeError):
    """Base class for every failure that maps to a command exit status."""

    exit_code: int = 1
    unreachable: bool = False


class WrongUsage(NixiformError):
    exit_code = 2


class NoSuchInstance(NixiformError):
    exit_code = 10


class NoSuchConfig(NixiformError):
    exit_code = 11


class BuildFailed(NixiformError):
    exit_code = 12


class InvalidArtifact(NixiformError):
    exit_code = 13


class NoInputFile(NixiformError):
    exit_code = 14


class NoDeployFile(NixiformError):
    exit_code = 15


class SecretsPushFailed(NixiformError):
    exit_code = 16


class HostUnreachable(NixiformError):
    exit_code = 17
    unreachable = True


class TransferFailed(NixiformError):
    """Raised when an artifact could not be moved to the node."""

    EXIT_CODES = {"local": 20, "bundle": 21, "remote": 22}

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.exit_code = self.EXIT_CODES[kind]


class RefusedDryBootstrap(NixiformError):
    exit_code = 23


class InvalidProvisioner(NixiformError):
    exit_code = 24


class RebootRequired(NixiformError):
    exit_code = 25


class HostUnreachableAfterReboot(NixiformError):
    exit_code = 26
    unreachable = True


class HostNotManaged(NixiformError):
    exit_code = 27


class MissingBootstrapFiles(NixiformError):
    exit_code = 28


class ActivationFailed(NixiformError):
    exit_code = 29
