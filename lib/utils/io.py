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


"""Utility functions for I/O.

"""

import errno
import logging
import os
import tempfile

from vmmigrate import errors


def ReadFile(file_name, size=-1):
  """Reads a file.

  @type size: int
  @param size: Read at most size bytes (if negative, entire file)
  @rtype: str
  @return: the (possibly partial) content of the file

  """
  with open(file_name, "r") as f:
    return f.read(size)


def WriteFile(file_name, data, mode=None, mkdir=False):
  """(Over)write a file atomically.

  The file is written to a temporary file in the same directory and then
  renamed over the destination, so readers never see partial content.

  @type file_name: str
  @param file_name: the target filename
  @type data: str
  @param data: the new contents of the file
  @type mode: int
  @param mode: file mode for the new file, if not given the umask applies
  @type mkdir: boolean
  @param mkdir: whether to create the parent directory if missing

  """
  if not os.path.isabs(file_name):
    raise errors.ProgrammerError("Path passed to WriteFile is not"
                                 " absolute: '%s'" % file_name)

  dir_name, base_name = os.path.split(file_name)
  if mkdir and not os.path.isdir(dir_name):
    os.makedirs(dir_name)

  fd, new_name = tempfile.mkstemp(".new", base_name, dir_name)
  do_remove = True
  try:
    if mode is not None:
      os.chmod(new_name, mode)
    with os.fdopen(fd, "w") as f:
      f.write(data)
      f.flush()
      os.fsync(f.fileno())
    os.rename(new_name, file_name)
    do_remove = False
  finally:
    if do_remove:
      RemoveFile(new_name)


def RemoveFile(filename):
  """Remove a file ignoring some errors.

  Remove a file, ignoring non-existing ones or directories. Other
  errors are passed.

  @type filename: str
  @param filename: the file to be removed

  """
  try:
    os.unlink(filename)
  except OSError as err:
    if err.errno not in (errno.ENOENT, errno.EISDIR):
      raise


def RenameFile(old, new, mkdir=False):
  """Renames a file.

  @type old: string
  @param old: Original path
  @type new: string
  @param new: New path
  @type mkdir: bool
  @param mkdir: Whether to create target directory if it doesn't exist

  """
  try:
    return os.rename(old, new)
  except OSError as err:
    # Missing target directories are rare, only create them on demand
    if mkdir and err.errno == errno.ENOENT:
      os.makedirs(os.path.dirname(new))
      return os.rename(old, new)
    raise


def _ParsePidFileContents(data):
  """Tries to extract a process ID from a PID file's content.

  @type data: string
  @rtype: int
  @return: Zero if nothing could be read, PID otherwise

  """
  try:
    pid = int(data)
  except (TypeError, ValueError):
    return 0
  else:
    return pid


def ReadPidFile(pidfile):
  """Read a pid from a file.

  @type  pidfile: string
  @param pidfile: path to the file containing the pid
  @rtype: int
  @return: The process id, if the file exists and contains a valid PID,
           otherwise 0

  """
  try:
    raw_data = ReadFile(pidfile)
  except EnvironmentError as err:
    if err.errno != errno.ENOENT:
      logging.exception("Can't read pid file")
    return 0

  return _ParsePidFileContents(raw_data)
