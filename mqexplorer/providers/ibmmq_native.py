"""pymqi-backed session used by :class:`~mqexplorer.providers.ibmmq.IbmMqProvider`.

Every method here blocks; callers run them in a worker thread.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

import pymqi
from pymqi import CMQC, CMQCFC, CMQXC

from mqexplorer.models import ChannelStatus

from .ibmmq import (
    ChannelRecord,
    IbmMqParams,
    MessageFormatError,
    NativeMessage,
    PutDescriptor,
    QueueMode,
    QueueRecord,
    TopicRecord,
)
from .types import BackendError

LOG = logging.getLogger(__name__)

_OPEN_OPTIONS = {
    QueueMode.BROWSE: CMQC.MQOO_BROWSE,
    QueueMode.OUTPUT: CMQC.MQOO_OUTPUT,
    QueueMode.INPUT: CMQC.MQOO_INPUT_AS_Q_DEF,
    QueueMode.INQUIRE: CMQC.MQOO_INQUIRE,
}

_FORMAT_REASONS = frozenset(
    {
        CMQC.MQRC_TRUNCATED_MSG_FAILED,
        CMQC.MQRC_TRUNCATED_MSG_ACCEPTED,
        CMQC.MQRC_FORMAT_ERROR,
        CMQC.MQRC_NOT_CONVERTED,
    }
)

_NOT_FOUND_REASONS = frozenset({CMQC.MQRC_UNKNOWN_OBJECT_NAME, CMQCFC.MQRCCF_NONE_FOUND})

_QUEUE_TYPES = {
    CMQC.MQQT_LOCAL: "Local",
    CMQC.MQQT_MODEL: "Model",
    CMQC.MQQT_ALIAS: "Alias",
    CMQC.MQQT_REMOTE: "Remote",
    CMQC.MQQT_CLUSTER: "Cluster",
}

_TOPIC_TYPES = {
    CMQC.MQTOPT_LOCAL: "Local",
    CMQC.MQTOPT_CLUSTER: "Cluster",
}

_CHANNEL_TYPES = {
    CMQXC.MQCHT_SENDER: "Sender",
    CMQXC.MQCHT_SERVER: "Server",
    CMQXC.MQCHT_RECEIVER: "Receiver",
    CMQXC.MQCHT_REQUESTER: "Requester",
    CMQXC.MQCHT_CLNTCONN: "Client-connection",
    CMQXC.MQCHT_SVRCONN: "Server-connection",
    CMQXC.MQCHT_CLUSRCVR: "Cluster-receiver",
    CMQXC.MQCHT_CLUSSDR: "Cluster-sender",
}

_CHANNEL_STATES = {
    CMQCFC.MQCHS_INACTIVE: ChannelStatus.INACTIVE,
    CMQCFC.MQCHS_BINDING: ChannelStatus.STARTING,
    CMQCFC.MQCHS_STARTING: ChannelStatus.STARTING,
    CMQCFC.MQCHS_INITIALIZING: ChannelStatus.STARTING,
    CMQCFC.MQCHS_REQUESTING: ChannelStatus.STARTING,
    CMQCFC.MQCHS_RUNNING: ChannelStatus.RUNNING,
    CMQCFC.MQCHS_STOPPING: ChannelStatus.STOPPING,
    CMQCFC.MQCHS_RETRYING: ChannelStatus.RETRYING,
    CMQCFC.MQCHS_STOPPED: ChannelStatus.STOPPED,
}


class PymqiSession:
    """One client connection to a queue manager plus its PCF executor."""

    def __init__(self) -> None:
        self._qmgr: pymqi.QueueManager | None = None
        self._pcf: pymqi.PCFExecute | None = None
        self._max_length = 4 * 1024 * 1024

    # -- connection ------------------------------------------------------

    def connect(self, params: IbmMqParams) -> None:
        cd = pymqi.CD()
        cd.ChannelName = params.channel.encode()
        cd.ConnectionName = f"{params.host}({params.port})".encode()
        cd.ChannelType = CMQXC.MQCHT_CLNTCONN
        cd.TransportType = CMQXC.MQXPT_TCP

        options: dict[str, Any] = {"cd": cd}
        if params.use_tls:
            cd.SSLCipherSpec = (params.cipher_spec or "ANY_TLS12_OR_HIGHER").encode()
            sco = pymqi.SCO()
            if params.key_repository:
                sco.KeyRepository = params.key_repository.encode()
            options["sco"] = sco
        if params.username:
            options["user"] = params.username
            options["password"] = params.password.get_secret_value() if params.password else ""

        qmgr = pymqi.QueueManager(None)
        try:
            qmgr.connect_with_options(params.queue_manager, **options)
        except pymqi.MQMIError as exc:
            raise BackendError(f"Cannot connect to queue manager {params.queue_manager}: {exc}") from exc
        self._qmgr = qmgr
        self._max_length = params.max_message_length

    def disconnect(self) -> None:
        qmgr, self._qmgr = self._qmgr, None
        if qmgr is not None:
            qmgr.disconnect()

    def open_command_executor(self, wait_seconds: float) -> None:
        self._pcf = pymqi.PCFExecute(
            self._connection(),
            disconnect_on_exit=False,
            response_wait_interval=int(wait_seconds * 1000),
        )

    def close_command_executor(self) -> None:
        pcf, self._pcf = self._pcf, None
        if pcf is not None:
            pcf.disconnect()

    # -- queue handles ---------------------------------------------------

    def open_queue(self, name: str, mode: QueueMode) -> pymqi.Queue:
        options = _OPEN_OPTIONS[mode] | CMQC.MQOO_FAIL_IF_QUIESCING
        try:
            return pymqi.Queue(self._connection(), name.encode(), options)
        except pymqi.MQMIError as exc:
            raise BackendError(f"Cannot open queue {name} for {mode.value}: {exc}") from exc

    def close_queue(self, handle: pymqi.Queue) -> None:
        handle.close()

    def browse(self, handle: pymqi.Queue, first: bool, match_id: bytes | None) -> NativeMessage | None:
        md = pymqi.MD()
        gmo = pymqi.GMO()
        gmo.Options = (
            (CMQC.MQGMO_BROWSE_FIRST if first else CMQC.MQGMO_BROWSE_NEXT)
            | CMQC.MQGMO_NO_WAIT
            | CMQC.MQGMO_FAIL_IF_QUIESCING
        )
        if match_id is not None:
            gmo.Version = CMQC.MQGMO_VERSION_2
            gmo.MatchOptions = CMQC.MQMO_MATCH_MSG_ID
            md.MsgId = match_id
        try:
            payload = handle.get(self._max_length, md, gmo)
        except pymqi.MQMIError as exc:
            if exc.reason == CMQC.MQRC_NO_MSG_AVAILABLE:
                return None
            if exc.reason in _FORMAT_REASONS:
                raise MessageFormatError(f"Message cannot be browsed intact: {exc}") from exc
            raise BackendError(f"Browse failed: {exc}") from exc
        return _native_message(md, payload)

    def get_destructive(self, handle: pymqi.Queue) -> bool:
        """Remove one message; False once the queue is empty."""

        gmo = pymqi.GMO()
        gmo.Options = (
            CMQC.MQGMO_NO_WAIT
            | CMQC.MQGMO_NO_SYNCPOINT
            | CMQC.MQGMO_ACCEPT_TRUNCATED_MSG
            | CMQC.MQGMO_FAIL_IF_QUIESCING
        )
        try:
            handle.get(1, pymqi.MD(), gmo)
        except pymqi.MQMIError as exc:
            if exc.reason == CMQC.MQRC_NO_MSG_AVAILABLE:
                return False
            if exc.reason == CMQC.MQRC_TRUNCATED_MSG_ACCEPTED:
                return True
            raise BackendError(f"Destructive get failed: {exc}") from exc
        return True

    def put(self, handle: pymqi.Queue, descriptor: PutDescriptor, syncpoint: bool) -> bytes:
        md = _descriptor_md(descriptor)
        pmo = pymqi.PMO()
        pmo.Options = (
            (CMQC.MQPMO_SYNCPOINT if syncpoint else CMQC.MQPMO_NO_SYNCPOINT)
            | CMQC.MQPMO_NEW_MSG_ID
            | CMQC.MQPMO_FAIL_IF_QUIESCING
        )
        try:
            handle.put(descriptor.body, md, pmo)
        except pymqi.MQMIError as exc:
            raise BackendError(f"Put failed: {exc}") from exc
        return md.MsgId

    def publish(self, topic_string: str, descriptor: PutDescriptor) -> None:
        topic = pymqi.Topic(self._connection(), topic_string=topic_string.encode())
        try:
            topic.open(open_opts=CMQC.MQOO_OUTPUT | CMQC.MQOO_FAIL_IF_QUIESCING)
        except pymqi.MQMIError as exc:
            raise BackendError(f"Cannot open topic {topic_string}: {exc}") from exc
        try:
            pmo = pymqi.PMO()
            pmo.Options = CMQC.MQPMO_NO_SYNCPOINT | CMQC.MQPMO_NEW_MSG_ID | CMQC.MQPMO_FAIL_IF_QUIESCING
            topic.pub(descriptor.body, _descriptor_md(descriptor), pmo)
        except pymqi.MQMIError as exc:
            raise BackendError(f"Publish to {topic_string} failed: {exc}") from exc
        finally:
            topic.close()

    def commit(self) -> None:
        self._connection().commit()

    def backout(self) -> None:
        self._connection().backout()

    # -- inquiry ---------------------------------------------------------

    def inquire_depth(self, name: str) -> int:
        queue = self.open_queue(name, QueueMode.INQUIRE)
        try:
            return int(queue.inquire(CMQC.MQIA_CURRENT_Q_DEPTH))
        finally:
            queue.close()

    def inquire_queue(self, name: str) -> QueueRecord:
        queue = self.open_queue(name, QueueMode.INQUIRE)
        try:
            attributes = {
                CMQC.MQCA_Q_NAME: name,
                CMQC.MQIA_Q_TYPE: queue.inquire(CMQC.MQIA_Q_TYPE),
                CMQC.MQIA_CURRENT_Q_DEPTH: queue.inquire(CMQC.MQIA_CURRENT_Q_DEPTH),
                CMQC.MQIA_MAX_Q_DEPTH: queue.inquire(CMQC.MQIA_MAX_Q_DEPTH),
                CMQC.MQCA_Q_DESC: queue.inquire(CMQC.MQCA_Q_DESC),
            }
        except pymqi.MQMIError as exc:
            raise BackendError(f"Direct inquiry on {name} failed: {exc}") from exc
        finally:
            queue.close()
        return _queue_record(attributes)

    def pcf_inquire_queues(self, pattern: str) -> list[QueueRecord]:
        rows = self._pcf_rows(
            "MQCMD_INQUIRE_Q",
            {CMQC.MQCA_Q_NAME: pattern.encode(), CMQC.MQIA_Q_TYPE: CMQC.MQQT_ALL},
        )
        return [_queue_record(row) for row in rows]

    def pcf_queue_depth(self, name: str) -> int | None:
        rows = self._pcf_rows("MQCMD_INQUIRE_Q", {CMQC.MQCA_Q_NAME: name.encode()})
        for row in rows:
            depth = row.get(CMQC.MQIA_CURRENT_Q_DEPTH)
            if depth is not None:
                return int(depth)
        return None

    def pcf_clear_queue(self, name: str) -> None:
        try:
            self._command_executor().MQCMD_CLEAR_Q({CMQC.MQCA_Q_NAME: name.encode()})
        except pymqi.MQMIError as exc:
            raise BackendError(f"PCF clear of {name} failed: {exc}") from exc

    def pcf_inquire_topics(self, pattern: str) -> list[TopicRecord]:
        rows = self._pcf_rows("MQCMD_INQUIRE_TOPIC", {CMQC.MQCA_TOPIC_NAME: pattern.encode()})
        return [
            TopicRecord(
                name=_text(row.get(CMQC.MQCA_TOPIC_NAME)) or "",
                topic_string=_text(row.get(CMQC.MQCA_TOPIC_STRING)) or "",
                type=_TOPIC_TYPES.get(row.get(CMQC.MQIA_TOPIC_TYPE)),
                description=_text(row.get(CMQC.MQCA_TOPIC_DESC)),
            )
            for row in rows
        ]

    def pcf_topic_status(self, topic_string: str) -> tuple[int | None, int | None]:
        rows = self._pcf_rows(
            "MQCMD_INQUIRE_TOPIC_STATUS",
            {CMQC.MQCA_TOPIC_STRING: topic_string.encode()},
        )
        if not rows:
            return None, None
        row = rows[0]
        return row.get(CMQC.MQIA_PUB_COUNT), row.get(CMQC.MQIA_SUB_COUNT)

    def pcf_inquire_channels(self, pattern: str) -> list[ChannelRecord]:
        rows = self._pcf_rows("MQCMD_INQUIRE_CHANNEL", {CMQCFC.MQCACH_CHANNEL_NAME: pattern.encode()})
        return [
            ChannelRecord(
                name=_text(row.get(CMQCFC.MQCACH_CHANNEL_NAME)) or "",
                type=_CHANNEL_TYPES.get(row.get(CMQCFC.MQIACH_CHANNEL_TYPE), "Unknown"),
                connection_name=_text(row.get(CMQCFC.MQCACH_CONNECTION_NAME)),
                description=_text(row.get(CMQCFC.MQCACH_DESC)),
                max_message_length=row.get(CMQCFC.MQIACH_MAX_MSG_LENGTH),
                heartbeat_interval=row.get(CMQCFC.MQIACH_HB_INTERVAL),
                batch_size=row.get(CMQCFC.MQIACH_BATCH_SIZE),
            )
            for row in rows
        ]

    def pcf_channel_status(self, name: str) -> ChannelStatus:
        try:
            rows = self._command_executor().MQCMD_INQUIRE_CHANNEL_STATUS(
                {CMQCFC.MQCACH_CHANNEL_NAME: name.encode()}
            )
        except pymqi.MQMIError as exc:
            if exc.reason == CMQCFC.MQRCCF_CHL_STATUS_NOT_FOUND:
                return ChannelStatus.INACTIVE
            raise BackendError(f"Channel status inquiry for {name} failed: {exc}") from exc
        if not rows:
            return ChannelStatus.INACTIVE
        return _CHANNEL_STATES.get(rows[0].get(CMQCFC.MQIACH_CHANNEL_STATUS), ChannelStatus.UNKNOWN)

    def pcf_start_channel(self, name: str) -> None:
        try:
            self._command_executor().MQCMD_START_CHANNEL({CMQCFC.MQCACH_CHANNEL_NAME: name.encode()})
        except pymqi.MQMIError as exc:
            raise BackendError(f"Cannot start channel {name}: {exc}") from exc

    def pcf_stop_channel(self, name: str) -> None:
        try:
            self._command_executor().MQCMD_STOP_CHANNEL({CMQCFC.MQCACH_CHANNEL_NAME: name.encode()})
        except pymqi.MQMIError as exc:
            raise BackendError(f"Cannot stop channel {name}: {exc}") from exc

    # -- helpers ---------------------------------------------------------

    def _connection(self) -> pymqi.QueueManager:
        if self._qmgr is None:
            raise BackendError("Queue manager connection is not open")
        return self._qmgr

    def _command_executor(self) -> pymqi.PCFExecute:
        if self._pcf is None:
            raise BackendError("PCF command executor is not open")
        return self._pcf

    def _pcf_rows(self, command: str, args: Mapping[int, Any]) -> list[Mapping[int, Any]]:
        try:
            return list(getattr(self._command_executor(), command)(dict(args)))
        except pymqi.MQMIError as exc:
            if exc.reason in _NOT_FOUND_REASONS:
                return []
            raise BackendError(f"PCF {command} failed: {exc}") from exc


def _descriptor_md(descriptor: PutDescriptor) -> pymqi.MD:
    md = pymqi.MD()
    md.Format = descriptor.format.encode().ljust(8)[:8]
    if descriptor.priority is not None:
        md.Priority = descriptor.priority
    if descriptor.persistence is not None:
        md.Persistence = descriptor.persistence
    if descriptor.correl_id is not None:
        md.CorrelId = descriptor.correl_id
    if descriptor.reply_to_queue:
        md.ReplyToQ = descriptor.reply_to_queue.encode()
    if descriptor.expiry is not None:
        md.Expiry = descriptor.expiry
    if descriptor.message_type is not None:
        md.MsgType = descriptor.message_type
    return md


def _native_message(md: pymqi.MD, payload: bytes) -> NativeMessage:
    return NativeMessage(
        msg_id=bytes(md.MsgId),
        correl_id=bytes(md.CorrelId),
        payload=payload,
        format=_text(md.Format) or "",
        put_date=_text(md.PutDate) or "",
        put_time=_text(md.PutTime) or "",
        persistence=md.Persistence,
        priority=md.Priority,
        put_application=_text(md.PutApplName),
        reply_to_queue=_text(md.ReplyToQ),
        backout_count=md.BackoutCount,
        user_identifier=_text(md.UserIdentifier),
        message_type=md.MsgType,
        expiry=md.Expiry,
        encoding=md.Encoding,
        ccsid=md.CodedCharSetId,
    )


def _queue_record(row: Mapping[int, Any]) -> QueueRecord:
    depth = row.get(CMQC.MQIA_CURRENT_Q_DEPTH)
    max_depth = row.get(CMQC.MQIA_MAX_Q_DEPTH)
    extra = {
        key: row[attribute]
        for key, attribute in (
            ("open_input_count", CMQC.MQIA_OPEN_INPUT_COUNT),
            ("open_output_count", CMQC.MQIA_OPEN_OUTPUT_COUNT),
            ("inhibit_get", CMQC.MQIA_INHIBIT_GET),
            ("inhibit_put", CMQC.MQIA_INHIBIT_PUT),
        )
        if attribute in row
    }
    return QueueRecord(
        name=_text(row.get(CMQC.MQCA_Q_NAME)) or "",
        type=_QUEUE_TYPES.get(row.get(CMQC.MQIA_Q_TYPE)),
        depth=int(depth) if depth is not None else None,
        max_depth=int(max_depth) if max_depth is not None else None,
        description=_text(row.get(CMQC.MQCA_Q_DESC)),
        created_at=_creation_time(row),
        extra=extra,
    )


def _creation_time(row: Mapping[int, Any]) -> datetime | None:
    date = _text(row.get(CMQC.MQCA_CREATION_DATE))
    clock = _text(row.get(CMQC.MQCA_CREATION_TIME))
    if not date or not clock:
        return None
    try:
        return datetime.strptime(f"{date} {clock}", "%Y-%m-%d %H.%M.%S")
    except ValueError:
        LOG.debug("Unparseable creation stamp %r %r", date, clock)
        return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = str(value).strip().strip("\x00")
    return text or None


__all__ = ["PymqiSession"]
