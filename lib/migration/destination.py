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


"""Parser for the status output of the guest start on the destination.

When a guest is started for an incoming migration, the destination reports
where it listens for the memory transfer and for the disk mirrors. Every
line of that output is matched against a fixed set of forms; each form
yields a L{DestinationEvent} of the matching kind.

"""

import re

import pyparsing as pyp

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import objects


EV_MIGRATION_TCP = "migration-tcp"
EV_MIGRATION_UNIX = "migration-unix"
EV_MIGRATION_PORT = "migration-port"
EV_SPICE_PORT = "spice-port"
EV_NBD_TCP = "nbd-tcp"
EV_NBD_UNIX = "nbd-unix"
EV_REPLICATED = "replicated-volume"
EV_QEMU_MESSAGE = "qemu-message"

#: Events carrying the memory transfer endpoint
EV_MIGRATION_ALL = frozenset([
  EV_MIGRATION_TCP,
  EV_MIGRATION_UNIX,
  EV_MIGRATION_PORT,
  ])
#: Events carrying a disk mirror endpoint
EV_NBD_ALL = frozenset([
  EV_NBD_TCP,
  EV_NBD_UNIX,
  ])

_SOCKET_ID_RE = re.compile(r"/(\d+)(?:_nbd)?\.migrate$")


class DestinationEvent(objects.ConfigObject):
  """One piece of information reported by the destination.

  @ivar kind: one of the C{EV_*} constants
  @ivar drive: drive key, for disk mirror and replication events

  """
  __slots__ = [
    "kind",
    "host",
    "port",
    "path",
    "exportname",
    "drive",
    "drivestr",
    "volid",
    "message",
    ]

  @property
  def uri(self):
    """The endpoint to hand to the hypervisor, if any.

    """
    if self.kind in (EV_MIGRATION_TCP, EV_MIGRATION_PORT):
      return "tcp:%s:%s" % (self.host, self.port)
    elif self.kind == EV_MIGRATION_UNIX:
      return "unix:%s" % self.path
    elif self.kind == EV_NBD_TCP:
      return "nbd:%s:%s:exportname=%s" % (self.host, self.port,
                                           self.exportname)
    elif self.kind == EV_NBD_UNIX:
      return "nbd:unix:%s:exportname=%s" % (self.path, self.exportname)
    return None

  def GetSocketGuestId(self):
    """Returns the guest id encoded in a unix socket path.

    @rtype: int or None

    """
    if self.path is None:
      return None
    match = _SOCKET_ID_RE.search(self.path)
    if not match:
      return None
    return int(match.group(1))


def _Event(kind, **fields):
  def _Build(tokens):
    values = dict((name, tokens[token]) for (name, token) in fields.items()
                  if token in tokens)
    return DestinationEvent(kind=kind, **values)
  return _Build


def _NbdEvent(kind):
  def _Build(tokens):
    exportname = tokens["exportname"]
    drive = exportname
    if drive.startswith(constants.DRIVE_NODE_PREFIX):
      drive = drive[len(constants.DRIVE_NODE_PREFIX):]
    return DestinationEvent(kind=kind, host=tokens.get("host"),
                            port=tokens.get("port"), path=tokens.get("path"),
                            exportname=exportname, drive=drive,
                            drivestr=tokens["drivestr"])
  return _Build


def _BuildGrammar():
  """Builds the grammar of the destination status lines.

  """
  colon = pyp.Literal(":").suppress()
  port = pyp.Word(pyp.nums).set_parse_action(lambda t: int(t[0]))
  ipv4 = pyp.Word(pyp.nums + ".")
  ipv6 = pyp.Combine(pyp.Literal("[") + pyp.Word(pyp.hexnums + ":.") +
                     pyp.Literal("]"))
  host = (pyp.Literal("localhost") | ipv6 | ipv4)("host")
  path = pyp.Word(pyp.printables, exclude_chars=":")("path")
  nonspace = pyp.Word(pyp.printables)
  rest = pyp.rest_of_line

  migration_tcp = (pyp.Literal("migration listens on tcp:").suppress() +
                   host + colon + port("port"))
  migration_tcp.set_parse_action(_Event(EV_MIGRATION_TCP, host="host",
                                        port="port"))

  migration_unix = (pyp.Literal("migration listens on unix:").suppress() +
                    path)
  migration_unix.set_parse_action(_Event(EV_MIGRATION_UNIX, path="path"))

  migration_port = (pyp.Literal("migration listens on port").suppress() +
                    port("port"))
  migration_port.set_parse_action(lambda t:
                                  DestinationEvent(kind=EV_MIGRATION_PORT,
                                                   host="localhost",
                                                   port=t["port"]))

  spice_port = (pyp.Literal("spice listens on port").suppress() +
                port("port"))
  spice_port.set_parse_action(_Event(EV_SPICE_PORT, port="port"))

  exportname = (pyp.Literal(":exportname=").suppress() +
                pyp.Word(pyp.printables)("exportname"))
  volume = pyp.Literal("volume:").suppress() + nonspace("drivestr")
  nbd_prefix = pyp.Literal("storage migration listens on nbd:").suppress()

  nbd_unix = (nbd_prefix + pyp.Literal("unix:").suppress() + path +
              exportname + volume)
  nbd_unix.set_parse_action(_NbdEvent(EV_NBD_UNIX))

  nbd_tcp = (nbd_prefix + host + colon + port("port") + exportname + volume)
  nbd_tcp.set_parse_action(_NbdEvent(EV_NBD_TCP))

  replicated = (pyp.Literal("re-using replicated volume:").suppress() +
                nonspace("drive") + pyp.Literal("-").suppress() +
                rest("volid"))
  replicated.set_parse_action(lambda t:
                              DestinationEvent(kind=EV_REPLICATED,
                                               drive=t["drive"],
                                               volid=t["volid"].strip()))

  qemu_message = pyp.Literal("QEMU:").suppress() + rest("message")
  qemu_message.set_parse_action(lambda t:
                                DestinationEvent(kind=EV_QEMU_MESSAGE,
                                                 message=t["message"].strip()))

  return (migration_tcp | migration_unix | migration_port | spice_port |
          nbd_unix | nbd_tcp | replicated | qemu_message)


_GRAMMAR = _BuildGrammar()


def ParseLine(line):
  """Parses one status line of the destination.

  @type line: string
  @rtype: L{DestinationEvent} or None
  @return: the event, or None for lines not matching any known form

  """
  line = line.strip()
  if not line:
    return None
  try:
    return _GRAMMAR.parse_string(line, parse_all=True)[0]
  except pyp.ParseException:
    return None


def ParseLineStrict(line):
  """Like L{ParseLine}, but raises on unknown lines.

  @raise errors.ParseError: if the line matches no known form

  """
  event = ParseLine(line)
  if event is None:
    raise errors.ParseError("Unknown destination status line '%s'" % line)
  return event
