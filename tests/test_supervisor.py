"""
Process Supervisor Tests
========================
"""

from pisogate.supervisor import ProcessState, SupervisedProcess

from conftest import FakeKernel

ARGV = ["pppoe-server", "-I", "br0", "-L", "10.0.0.1"]


class BrokenSpawn(FakeKernel):
    def spawn(self, argv, log_path=None):
        raise PermissionError("Operation not permitted")


class TestSupervisedProcess:

    def test_start_waits_grace_then_verifies(self):
        kernel = FakeKernel()
        naps = []
        process = SupervisedProcess(kernel, "pppoe-server", grace_seconds=1.5, sleep=naps.append)
        result = process.start(ARGV)
        assert result.ok
        assert result.pid == 4242
        assert result.state == ProcessState.RUNNING
        assert naps == [1.5]
        assert process.argv == ARGV

    def test_exits_during_startup(self):
        kernel = FakeKernel()
        kernel.dying.add("pppoe-server")
        process = SupervisedProcess(kernel, "pppoe-server", grace_seconds=0)
        result = process.start(ARGV)
        assert not result.ok
        assert process.state == ProcessState.FAILED
        assert "exited during startup" in result.error

    def test_spawn_error(self):
        process = SupervisedProcess(BrokenSpawn(), "pppoe-server", grace_seconds=0)
        result = process.start(ARGV)
        assert not result.ok
        assert result.pid is None
        assert process.state == ProcessState.FAILED
        assert "spawn failed" in process.notes[-1]

    def test_refresh_notices_disappearance(self):
        kernel = FakeKernel()
        process = SupervisedProcess(kernel, "pppoe-server", grace_seconds=0)
        process.start(ARGV)
        assert process.refresh() == ProcessState.RUNNING
        kernel.processes.clear()
        assert process.refresh() == ProcessState.FAILED
        assert "process disappeared" in process.notes

    def test_refresh_stays_stopped(self):
        process = SupervisedProcess(FakeKernel(), "pppoe-server", grace_seconds=0)
        assert process.refresh() == ProcessState.STOPPED

    def test_stop(self):
        kernel = FakeKernel()
        process = SupervisedProcess(kernel, "pppoe-server", grace_seconds=0)
        process.start(ARGV)
        process.stop()
        assert process.state == ProcessState.STOPPED
        assert process.pid is None
        assert kernel.processes == []
        process.stop()
