import sys

import pytest

from portshare.runner import CommandError, ExecRunner


def test_run_returns_standard_output():
    output = ExecRunner().run(sys.executable, "-c", "print('hello')")
    assert output.strip() == b"hello"


def test_run_merges_standard_error_into_output():
    script = "import sys; sys.stderr.write('to-stderr'); sys.stderr.flush()"
    output = ExecRunner().run(sys.executable, "-c", script)
    assert b"to-stderr" in output


def test_nonzero_exit_raises_with_output_and_code():
    script = "import sys; print('boom'); sys.stdout.flush(); sys.exit(3)"
    with pytest.raises(CommandError) as info:
        ExecRunner().run(sys.executable, "-c", script)
    assert info.value.returncode == 3
    assert b"boom" in info.value.output
    assert str(info.value) == "exit status 3"


def test_missing_executable_raises_command_error():
    with pytest.raises(CommandError) as info:
        ExecRunner().run("portshare-no-such-command-for-tests")
    assert "executable file not found" in str(info.value)
    assert info.value.returncode is None


def test_timeout_raises_command_error():
    runner = ExecRunner(timeout=0.2)
    with pytest.raises(CommandError) as info:
        runner.run(sys.executable, "-c", "import time; time.sleep(5)")
    assert "timed out" in str(info.value)
    assert info.value.returncode is None