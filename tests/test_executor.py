"""
SubprocessExecutor against real child processes (the running interpreter),
plus the output buffer and secret masking helpers.
"""
import io
import os
import sys
import threading
import time

import pytest

from shipline.dsl import job
from shipline.executor import (
    MASK,
    CancelToken,
    OutputBuffer,
    SubprocessExecutor,
    mask_secrets,
)
from shipline.model import Cause

posix_only = pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX-only")


def py(name, code, **kwargs):
    return job(name, [sys.executable, "-c", code], **kwargs)


@pytest.fixture
def executor(tmp_path):
    return SubprocessExecutor(workdir=tmp_path, default_timeout=30)


class TestOutputBuffer:

    def test_keeps_everything_under_limit(self):
        buf = OutputBuffer(limit=10)
        buf.write(b"hello")
        assert buf.getvalue() == "hello"
        assert not buf.truncated

    def test_keeps_the_tail(self):
        buf = OutputBuffer(limit=4)
        buf.write(b"abc")
        buf.write(b"defg")
        assert buf.truncated
        assert buf.dropped == 3
        assert buf.getvalue() == "[output truncated: 3 bytes dropped]\ndefg"

    def test_drain(self):
        buf = OutputBuffer(limit=100)
        buf.drain(io.BufferedReader(io.BytesIO(b"line1\nline2\n")))
        assert buf.getvalue() == "line1\nline2\n"

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            OutputBuffer(limit=0)

    def test_masks_before_dropping(self):
        buf = OutputBuffer(limit=4, secrets={"T": "SECRET123"})
        buf.write(b"SECRET123tail")
        value = buf.getvalue()
        assert value == "[output truncated: 4 bytes dropped]\ntail"
        assert "123" not in value

    def test_masks_secret_split_across_writes(self):
        buf = OutputBuffer(limit=100, secrets={"T": "SECRET123"})
        buf.write(b"xxSEC")
        buf.write(b"RET1")
        buf.write(b"23yy")
        assert buf.getvalue() == f"xx{MASK}yy"

    def test_tail_holds_only_masked_text(self):
        buf = OutputBuffer(limit=8, secrets={"T": "SECRET123"})
        buf.write(b"x" * 20 + b"SECRET123")
        buf.write(b"!")
        value = buf.getvalue()
        assert value.endswith(f"xxx{MASK}!")
        assert "ECRET" not in value


class TestMaskSecrets:

    def test_masks_values(self):
        assert mask_secrets("token=abc123!", {"T": "abc123"}) == f"token={MASK}!"

    def test_short_values_left_alone(self):
        assert mask_secrets("a=xyz", {"T": "xyz"}) == "a=xyz"

    def test_longest_first(self):
        out = mask_secrets("secret-long", {"A": "secret", "B": "secret-long"})
        assert out == MASK

    def test_no_secrets(self):
        assert mask_secrets("plain", None) == "plain"


class TestSubprocessExecutor:

    def test_success(self, executor):
        result = executor.execute(py("ok", "print('hello')"), {})
        assert result.ok
        assert result.exit_code == 0
        assert result.cause is None
        assert "hello" in result.output

    def test_non_zero_exit(self, executor):
        result = executor.execute(py("bad", "import sys; print('oops'); sys.exit(3)"), {})
        assert not result.ok
        assert result.exit_code == 3
        assert result.cause is Cause.EXECUTION_FAILURE
        assert "oops" in result.output

    def test_stderr_is_merged(self, executor):
        result = executor.execute(py("err", "import sys; sys.stderr.write('to-stderr\\n')"), {})
        assert "to-stderr" in result.output

    def test_missing_executable(self, executor):
        result = executor.execute(job("missing", "/definitely/not/here --flag"), {})
        assert result.exit_code == 127
        assert result.cause is Cause.EXECUTION_FAILURE

    def test_missing_working_directory(self, executor):
        result = executor.execute(py("cwd", "print(1)", cwd="nope"), {})
        assert result.exit_code is None
        assert result.cause is Cause.EXECUTION_FAILURE
        assert "working directory" in result.output

    def test_working_directory(self, executor, tmp_path):
        (tmp_path / "sub").mkdir()
        result = executor.execute(py("cwd", "import os; print(os.getcwd())", cwd="sub"), {})
        assert result.output.strip() == str((tmp_path / "sub").resolve())

    def test_environment_is_allow_listed(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHIPLINE_TEST_LEAK", "leaked")
        ex = SubprocessExecutor(workdir=tmp_path, passthrough_env=("PATH",))
        code = "import os; print(os.environ.get('SHIPLINE_TEST_LEAK', 'absent')); print(os.environ['GCP_REGION'])"
        result = ex.execute(py("env", code, environment={"GCP_REGION": "europe-west3"}), {})
        assert result.output.split() == ["absent", "europe-west3"]

    def test_secrets_are_exported_and_masked(self, executor):
        code = "import os; print('token is', os.environ['GITHUB_TOKEN'])"
        result = executor.execute(py("secret", code), {"GITHUB_TOKEN": "gh-s3cret"})
        assert "gh-s3cret" not in result.output
        assert f"token is {MASK}" in result.output

    def test_secret_cut_by_output_limit_stays_masked(self, tmp_path):
        ex = SubprocessExecutor(workdir=tmp_path, output_limit=8)
        code = "import os, sys; sys.stdout.write('xx' + os.environ['TOKEN'])"
        result = ex.execute(py("cut", code), {"TOKEN": "SECRET123"})
        assert "ECRET" not in result.output
        assert result.output.endswith(MASK)

    def test_output_is_bounded(self, tmp_path):
        ex = SubprocessExecutor(workdir=tmp_path, output_limit=100)
        result = ex.execute(py("loud", "print('x' * 5000); print('END')"), {})
        assert result.truncated
        assert result.output.startswith("[output truncated:")
        assert result.output.rstrip().endswith("END")

    def test_timeout(self, tmp_path):
        ex = SubprocessExecutor(workdir=tmp_path)
        start = time.monotonic()
        result = ex.execute(py("slow", "import time; time.sleep(30)", timeout=0.5), {})
        assert time.monotonic() - start < 15
        assert result.cause is Cause.TIMEOUT
        assert "timed out" in result.output

    @posix_only
    def test_timeout_kills_child_processes(self, tmp_path):
        # the child keeps the pipe open; the whole group has to go
        code = (
            "import subprocess, sys, time; "
            "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)']); "
            "time.sleep(30)"
        )
        ex = SubprocessExecutor(workdir=tmp_path, reader_grace=2)
        start = time.monotonic()
        result = ex.execute(py("tree", code, timeout=0.5), {})
        assert result.cause is Cause.TIMEOUT
        assert time.monotonic() - start < 10

    @posix_only
    def test_cancel(self, executor):
        token = CancelToken()
        box = {}

        def target():
            box["result"] = executor.execute(
                py("long", "import time; print('started', flush=True); time.sleep(30)"), {}, token
            )

        t = threading.Thread(target=target)
        t.start()
        time.sleep(0.5)
        token.cancel()
        t.join(15)
        assert not t.is_alive()
        assert box["result"].cause is Cause.CANCELLED

    @posix_only
    def test_cancel_before_start(self, executor):
        token = CancelToken()
        token.cancel()
        result = executor.execute(py("late", "import time; time.sleep(30)"), {}, token)
        assert result.cause is Cause.CANCELLED
