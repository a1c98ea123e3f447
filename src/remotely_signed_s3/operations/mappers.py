"""
Error mapping and CLI utilities.

Provides centralized exception-to-exit-code mapping and CLI command wrappers
to ensure consistent error handling across all Typer commands.
"""
from __future__ import annotations

import typer
from typing import Callable, TypeVar

T = TypeVar('T')

# Exit codes by exception class name; subclasses inherit their parent's code
EXIT_CODES = {
    "ValidationError": 2,
    "ConfigurationError": 2,
    "ProtocolError": 2,
    "ValueError": 2,
    "TransportError": 3,
    "UpstreamError": 4,
    "IntegrityError": 5,
    "ConcurrentModificationError": 6,
    "TransferTimeoutError": 7,
}

def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    Returns exit codes:
    - 0: Success
    - 1: Unknown error
    - 2: Invalid input or options (ValidationError, ConfigurationError, ProtocolError)
    - 3: Network failure (TransportError)
    - 4: Object store rejected the request (UpstreamError)
    - 5: Downloaded bytes failed verification (IntegrityError)
    - 6: File changed while being prepared (ConcurrentModificationError)
    - 7: Transfer deadline expired (TransferTimeoutError)

    The exception's class hierarchy is searched, so HeaderValidationError
    maps like ValidationError.

    Args:
        exc: Exception to map

    Returns:
        Exit code (1-7, with 1 as fallback for unknown exceptions)
    """
    for cls in type(exc).__mro__:
        if cls.__name__ in EXIT_CODES:
            return EXIT_CODES[cls.__name__]
    return 1

def run_and_exit(func: Callable[[], T]) -> T:
    """
    Unified error wrapper for CLI commands.

    Executes the given function and maps any exceptions to appropriate
    exit codes using typer.Exit. This centralizes error handling so
    CLI commands don't need individual try/except blocks.

    Args:
        func: Function to execute

    Returns:
        Function result if successful

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    try:
        return func()
    except typer.Exit:
        raise
    except Exception as e:
        from .printers import print_error
        print_error(e)
        raise typer.Exit(code=exit_code_for(e)) from e
