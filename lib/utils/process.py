#
#

# Copyright (C) 2026 the vmmigrate authors
# All rights reserved.
#
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are
# met:
#
# 1. Redistributions of source code must retain the above copyright notice,
# this list of conditions and the following disclaimer.
#
# 2. Redistributions in binary form must reproduce the above copyright
# notice, this list of conditions and the following disclaimer in the
# documentation and/or other materials provided with the distribution.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS
# IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED
# TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR
# PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR
# CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL,
# EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO,
# PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR
# PROFITS; OR BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF
# LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING
# NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE OF THIS
# SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.


"""Utility functions for processes.

"""


import errno
import logging
import os
import select
import signal
import subprocess

import psutil

from vmmigrate import errors
from vmmigrate import constants

from vmmigrate.utils import retry as utils_retry
from vmmigrate.utils import text as utils_text
from vmmigrate.utils import algo as utils_algo


#: when the command is not run into a timeout
_TIMEOUT_NONE = 0
#: when the command is terminated by SIGTERM after a timeout
_TIMEOUT_TERM = 1
#: when the command is killed by SIGKILL after a timeout
_TIMEOUT_KILL = 2


class RunResult(object):
  """Holds the result of running external programs.

  @type exit_code: int
  @ivar exit_code: the exit code of the program, or None (if the program
      didn't exit())
  @type signal: int or None
  @ivar signal: the signal that caused the program to finish, or None
      (if the program wasn't terminated by a signal)
  @type stdout: str
  @ivar stdout: the standard output of the program
  @type stderr: str
  @ivar stderr: the standard error of the program
  @type failed: boolean
  @ivar failed: True in case the program was
      terminated by a signal or exited with a non-zero exit code
  @type failed_by_timeout: boolean
  @ivar failed_by_timeout: True in case the program was
      terminated by timeout
  @ivar fail_reason: a string detailing the termination reason

  """
  __slots__ = ["exit_code", "signal", "stdout", "stderr",
               "failed", "failed_by_timeout", "fail_reason", "cmd"]

  def __init__(self, exit_code, signal_, stdout, stderr, cmd, timeout_action,
               timeout):
    self.cmd = cmd
    self.exit_code = exit_code
    self.signal = signal_
    self.stdout = stdout
    self.stderr = stderr
    self.failed = (signal_ is not None or exit_code != 0)
    self.failed_by_timeout = timeout_action != _TIMEOUT_NONE

    fail_msgs = []
    if self.signal is not None:
      fail_msgs.append("terminated by signal %s" % self.signal)
    elif self.exit_code is not None:
      fail_msgs.append("exited with exit code %s" % self.exit_code)
    else:
      fail_msgs.append("unable to determine termination reason")

    if timeout_action == _TIMEOUT_TERM:
      fail_msgs.append("terminated after timeout of %.2f seconds" % timeout)
    elif timeout_action == _TIMEOUT_KILL:
      fail_msgs.append(("force termination after timeout of %.2f seconds"
                        " and linger for another %.2f seconds") %
                       (timeout, constants.CHILD_LINGER_TIMEOUT))

    if fail_msgs and self.failed:
      self.fail_reason = utils_text.CommaJoin(fail_msgs)
    else:
      self.fail_reason = None

    if self.failed:
      logging.debug("Command '%s' failed (%s); output: %s",
                    self.cmd, self.fail_reason, self.output)

  def _GetOutput(self):
    """Returns the combined stdout and stderr for easier usage.

    """
    return self.stdout + self.stderr

  output = property(_GetOutput, None, None, "Return full output")


def _BuildCmdEnvironment(env, reset):
  """Builds the environment for an external program.

  """
  if reset:
    cmd_env = {}
  else:
    cmd_env = os.environ.copy()
    cmd_env["LC_ALL"] = "C"

  if env is not None:
    cmd_env.update(env)

  return cmd_env


def RunCmd(cmd, env=None, cwd="/", reset_env=False, timeout=None,
           input_data=None, output_fn=None, error_fn=None,
           _linger_timeout=constants.CHILD_LINGER_TIMEOUT):
  """Execute a (shell) command.

  The command should not read from its standard input beyond
  C{input_data}, as stdin is closed once that has been written.

  @type cmd: string or list
  @param cmd: Command to run
  @type env: dict
  @param env: Additional environment variables
  @type cwd: string
  @param cwd: Working directory for the program
  @type reset_env: boolean
  @param reset_env: whether to reset or keep the default os environment
  @type timeout: int
  @param timeout: If not None, timeout in seconds until child process gets
                  killed
  @type input_data: string
  @param input_data: Data written to the child's standard input
  @type output_fn: callable
  @param output_fn: Called with each line the child writes to stdout, as
                    soon as the line is complete
  @type error_fn: callable
  @param error_fn: Called with each line the child writes to stderr
  @rtype: L{RunResult}
  @return: RunResult instance
  @raise errors.ProgrammerError: if we call this when forks are disabled

  """
  if isinstance(cmd, str):
    strcmd = cmd
    shell = True
  else:
    cmd = [str(val) for val in cmd]
    strcmd = utils_text.ShellQuoteArgs(cmd)
    shell = False

  logging.info("RunCmd %s", strcmd)

  cmd_env = _BuildCmdEnvironment(env, reset_env)

  try:
    out, err, status, timeout_action = \
      _RunCmdPipe(cmd, cmd_env, shell, cwd, timeout, input_data,
                  output_fn, error_fn, _linger_timeout=_linger_timeout)
  except OSError as err:
    if err.errno == errno.ENOENT:
      raise errors.CommandError("Can't execute '%s': not found (%s)" %
                                (strcmd, err))
    else:
      raise

  if status >= 0:
    exitcode = status
    signal_ = None
  else:
    exitcode = None
    signal_ = -status

  return RunResult(exitcode, signal_, out, err, strcmd, timeout_action,
                   timeout)


def _WaitForProcess(child, timeout):
  """Waits for the child to terminate or until we reach timeout.

  """
  try:
    child.wait(timeout=max(0.0, timeout))
  except subprocess.TimeoutExpired:
    pass


def _RunCmdPipe(cmd, env, via_shell, cwd, timeout, input_data,
                output_fn, error_fn,
                _linger_timeout=constants.CHILD_LINGER_TIMEOUT):
  """Run a command and return its output.

  @type  cmd: string or list
  @param cmd: Command to run
  @type env: dict
  @param env: The environment to use
  @type via_shell: bool
  @param via_shell: if we should run via the shell
  @type cwd: string
  @param cwd: the working directory for the program
  @type timeout: int
  @param timeout: Timeout after the programm gets terminated
  @type input_data: string or None
  @param input_data: Data for the process' standard input
  @rtype: tuple
  @return: (out, err, status, timeout_action)

  """
  poller = select.poll()

  child = subprocess.Popen(cmd, shell=via_shell,
                           stderr=subprocess.PIPE,
                           stdout=subprocess.PIPE,
                           stdin=subprocess.PIPE,
                           close_fds=True, env=env,
                           cwd=cwd,
                           encoding="utf-8")

  out = []
  err = []

  def _Collector(buf, fn):
    def _Line(line):
      buf.append(line + "\n")
      if fn is not None:
        fn(line)
    return utils_text.LineSplitter(_Line)

  out_split = _Collector(out, output_fn)
  err_split = _Collector(err, error_fn)

  linger_timeout = None

  if timeout is None:
    poll_timeout = None
  else:
    poll_timeout = utils_algo.RunningTimeout(timeout, True).Remaining

  msg_timeout = ("Command %s (%d) run into execution timeout, terminating" %
                 (cmd, child.pid))
  msg_linger = ("Command %s (%d) run into linger timeout, killing" %
                (cmd, child.pid))

  timeout_action = _TIMEOUT_NONE

  if input_data:
    try:
      child.stdin.write(input_data)
    except BrokenPipeError:
      logging.debug("Command %s closed its standard input early", cmd)
  try:
    child.stdin.close()
  except BrokenPipeError:
    pass

  poller.register(child.stdout, select.POLLIN)
  poller.register(child.stderr, select.POLLIN)
  fdmap = {
    child.stdout.fileno(): (out_split, child.stdout),
    child.stderr.fileno(): (err_split, child.stderr),
    }
  for fd in fdmap:
    os.set_blocking(fd, False)

  while fdmap:
    if poll_timeout:
      pt = poll_timeout() * 1000
      if pt < 0:
        if linger_timeout is None:
          logging.warning(msg_timeout)
          if child.poll() is None:
            timeout_action = _TIMEOUT_TERM
            IgnoreProcessNotFound(os.kill, child.pid, signal.SIGTERM)
          linger_timeout = \
            utils_algo.RunningTimeout(_linger_timeout, True).Remaining
        pt = linger_timeout() * 1000
        if pt < 0:
          break
    else:
      pt = None

    pollresult = poller.poll(pt)

    for fd, event in pollresult:
      if event & select.POLLIN or event & select.POLLPRI:
        data = fdmap[fd][1].read()
        # no data from read signifies EOF (the same as POLLHUP)
        if not data:
          poller.unregister(fd)
          fdmap[fd][1].close()
          del fdmap[fd]
          continue
        fdmap[fd][0].write(data)
        fdmap[fd][0].flush()
      if (event & select.POLLNVAL or event & select.POLLHUP or
          event & select.POLLERR):
        poller.unregister(fd)
        fdmap[fd][1].close()
        del fdmap[fd]

  for (_, handle) in fdmap.values():
    handle.close()

  out_split.close()
  err_split.close()

  if timeout is not None:
    assert callable(poll_timeout)

    # We have no I/O left but it might still run
    if child.poll() is None:
      _WaitForProcess(child, poll_timeout())

    # Terminate if still alive after timeout
    if child.poll() is None:
      if linger_timeout is None:
        logging.warning(msg_timeout)
        timeout_action = _TIMEOUT_TERM
        IgnoreProcessNotFound(os.kill, child.pid, signal.SIGTERM)
        lt = _linger_timeout
      else:
        lt = linger_timeout()
      _WaitForProcess(child, lt)

    # Okay, still alive after timeout and linger timeout? Kill it!
    if child.poll() is None:
      timeout_action = _TIMEOUT_KILL
      logging.warning(msg_linger)
      IgnoreProcessNotFound(os.kill, child.pid, signal.SIGKILL)

  status = child.wait()
  return "".join(out), "".join(err), status, timeout_action


def IgnoreProcessNotFound(fn, *args, **kwargs):
  """Ignores ESRCH when calling a process-related function.

  ESRCH is raised when a process is not found.

  @rtype: bool
  @return: Whether process was found

  """
  try:
    fn(*args, **kwargs)
  except ProcessLookupError:
    return False

  return True


def IsProcessAlive(pid):
  """Check if a given pid exists on the system.

  Zombie processes are reported as dead.

  @type pid: int
  @param pid: the process ID to check
  @rtype: boolean
  @return: True if the process exists

  """
  assert isinstance(pid, int), "pid must be an integer"
  if pid <= 0:
    return False

  try:
    return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
  except psutil.NoSuchProcess:
    return False


def WaitForChild(child, timeout):
  """Waits for a child process started with L{subprocess.Popen} to exit.

  @type child: L{subprocess.Popen}
  @param child: the child process
  @type timeout: float
  @param timeout: how long to wait, in seconds
  @rtype: boolean
  @return: True if the child has been reaped

  """
  _WaitForProcess(child, timeout)
  return child.poll() is not None


def KillProcess(pid, signal_=signal.SIGTERM, timeout=30,
                waitpid=False):
  """Kill a process given by its pid.

  @type pid: int
  @param pid: The PID to terminate.
  @type signal_: int
  @param signal_: The signal to send, by default SIGTERM
  @type timeout: int
  @param timeout: The timeout after which, if the process is still alive,
                  a SIGKILL will be sent. If not positive, no such checking
                  will be done
  @type waitpid: boolean
  @param waitpid: If true, we should waitpid on this process after
      sending signals, since it's our own child and otherwise it
      would remain as zombie

  """
  def _helper(pid, signal_, wait):
    """Simple helper to encapsulate the kill/waitpid sequence"""
    if IgnoreProcessNotFound(os.kill, pid, signal_) and wait:
      try:
        os.waitpid(pid, os.WNOHANG)
      except OSError:
        pass

  if pid <= 0:
    # kill with pid=0 == suicide
    raise errors.ProgrammerError("Invalid pid given '%s'" % pid)

  if not IsProcessAlive(pid):
    return

  _helper(pid, signal_, waitpid)

  if timeout <= 0:
    return

  def _CheckProcess():
    if not IsProcessAlive(pid):
      return

    try:
      (result_pid, _) = os.waitpid(pid, os.WNOHANG)
    except OSError:
      raise utils_retry.RetryAgain()

    if result_pid > 0:
      return

    raise utils_retry.RetryAgain()

  try:
    # Wait up to $timeout seconds
    utils_retry.Retry(_CheckProcess, (0.01, 1.5, 0.1), timeout)
  except utils_retry.RetryTimeout:
    pass

  if IsProcessAlive(pid):
    # Kill process if it's still alive
    _helper(pid, signal.SIGKILL, waitpid)
