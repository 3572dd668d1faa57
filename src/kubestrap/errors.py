# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/errors.py

from __future__ import annotations

from typing import Optional


class BootstrapError(RuntimeError):
    pass


class TransientRemoteFailure(BootstrapError):
    """
    A remote command exited non-zero or the connection failed.
    Retried according to a RetryPolicy.
    """

    def __init__(
        self,
        message: str,
        *,
        rc: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.rc = rc
        self.stdout = stdout
        self.stderr = stderr


class NonCriticalStepFailure(BootstrapError):
    """Tolerated failure: logged, the sequence carries on."""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"non-critical step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause


class FatalBootstrapError(BootstrapError):
    pass


class RetryExhausted(FatalBootstrapError):
    def __init__(self, action: str, attempts: int, last_error: Optional[BaseException] = None):
        msg = f"{action} failed after {attempts} attempts"
        if last_error is not None:
            msg += f": {last_error}"
        super().__init__(msg)
        self.action = action
        self.attempts = attempts
        self.last_error = last_error


class StepFailure(FatalBootstrapError):
    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"critical step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause


class CredentialIssuanceFailure(FatalBootstrapError):
    pass


class TimeoutFailure(FatalBootstrapError):
    """A remote session or a polling wait exceeded its bound."""

    def __init__(self, what: str, timeout_s: float):
        super().__init__(f"timed out after {timeout_s:g}s waiting for {what}")
        self.what = what
        self.timeout_s = timeout_s


class DependencyFailed(FatalBootstrapError):
    pass


class ManifestDeployFailure(FatalBootstrapError):
    pass
