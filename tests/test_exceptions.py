import importlib.util
import warnings

from choptso.core.exceptions import (
    ChatError,
    NotFoundError,
    OperationTimeoutError,
    PermissionDeniedError,
    TransientError,
    ValidationError,
)


def test_status_codes():
    assert ValidationError.status_code == 422
    assert PermissionDeniedError.status_code == 403
    assert NotFoundError.status_code == 404
    assert TransientError.status_code == 503
    assert OperationTimeoutError.status_code == 504


def test_builtin_bases_kept_for_callers():
    assert isinstance(PermissionDeniedError(), PermissionError)
    assert isinstance(OperationTimeoutError(), TimeoutError)
    assert ValidationError("bad").detail == "bad"
    assert ChatError().detail == "Internal error"


def test_module_imports_without_deprecation_warnings():
    module_spec = importlib.util.find_spec("choptso.core.exceptions")
    module = importlib.util.module_from_spec(module_spec)
    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        module_spec.loader.exec_module(module)
    assert module.ValidationError.status_code == 422
