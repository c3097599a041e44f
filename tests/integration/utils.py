import functools
import os

import pytest


def skip_if_missing_env_vars(required_vars):
    """
    Decorator to skip tests if required environment variables are not set.

    Args:
        required_vars (list): List of environment variable names to check.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            missing = [var for var in required_vars if not os.getenv(var)]
            if missing:
                pytest.skip(
                    f"Missing required environment variables: {', '.join(missing)}. "
                    "Ensure they are set in your environment or .env file."
                )
            return func(*args, **kwargs)

        return wrapper

    return decorator


def verify_cli_success(result, expected_bill_number):
    """
    Verify common CLI success criteria for a committed invoice.

    Args:
        result: CliRunner result object from typer.testing
        expected_bill_number: Bill number expected in the summary
    """
    assert result.exit_code == 0, (
        f"Expected exit code 0, got {result.exit_code}\n"
        f"Output: {result.stdout}\nError: {result.stderr}"
    )
    assert f"Bill: {expected_bill_number}" in result.stdout, (
        f"Expected bill {expected_bill_number} in output\nOutput: {result.stdout}"
    )
