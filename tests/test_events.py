"""
Tests for watcher events, the event channel and record models.
"""

import threading

import pytest
from _hdwatch_test_helpers import make_header, make_txid
from pydantic import ValidationError

from hdwatch.events import (
    ChannelClosedError,
    Complete,
    Connected,
    Connecting,
    Error,
    EventChannel,
    FeeEstimate,
    LastBlock,
)
from hdwatch.models import BlockHeader, HistoryRecord, UtxoRecord


class TestEventChannel:
    def test_fifo_order(self):
        channel = EventChannel()
        channel.send(Connecting("tcp://a:1"))
        channel.send(Connected("tcp://a:1"))
        channel.send(Complete())

        assert channel.drain() == [Connecting("tcp://a:1"), Connected("tcp://a:1"), Complete()]
        assert channel.try_receive() is None

    def test_receive_timeout(self):
        assert EventChannel().receive(timeout=0.01) is None

    def test_send_after_close(self):
        channel = EventChannel()
        channel.close()
        assert channel.closed
        with pytest.raises(ChannelClosedError):
            channel.send(Complete())

    def test_offer_on_full_channel(self):
        channel = EventChannel(maxsize=1)
        assert channel.offer(Complete(), timeout=0.01)
        assert not channel.offer(Complete(), timeout=0.01)

    def test_blocked_sender_sees_close(self):
        channel = EventChannel(maxsize=1)
        channel.send(Complete())
        errors: list[Exception] = []

        def sender():
            try:
                channel.send(Complete())
            except ChannelClosedError as e:
                errors.append(e)

        thread = threading.Thread(target=sender)
        thread.start()
        channel.close()
        thread.join(timeout=2.0)

        assert not thread.is_alive()
        assert len(errors) == 1

    def test_cross_thread_delivery(self):
        channel = EventChannel()
        thread = threading.Thread(
            target=lambda: [channel.send(Connecting(str(i))) for i in range(50)]
        )
        thread.start()
        received = [channel.receive(timeout=2.0) for _ in range(50)]
        thread.join()
        assert received == [Connecting(str(i)) for i in range(50)]

    def test_iteration_stops_after_error(self):
        channel = EventChannel()
        failure = RuntimeError("boom")
        channel.send(Connecting())
        channel.send(Error(failure))
        channel.send(Connected())

        assert list(channel) == [Connecting(), Error(failure)]

    def test_iteration_ends_when_closed(self):
        channel = EventChannel()
        channel.send(Connecting())
        channel.send(Connected())
        channel.close()

        assert list(channel) == [Connecting(), Connected()]

    def test_iteration_sees_close_from_another_thread(self):
        channel = EventChannel()
        received: list = []
        consumer = threading.Thread(target=lambda: received.extend(channel), daemon=True)
        consumer.start()
        channel.send(Connecting())
        channel.close()
        consumer.join(timeout=2.0)

        assert not consumer.is_alive()
        assert received == [Connecting()]


def test_error_str():
    assert str(Error(ValueError("bad"))) == "ValueError: bad"


def test_fee_estimate_tuple():
    assert FeeEstimate(3.0, 2.0, 1.0).as_tuple() == (3.0, 2.0, 1.0)


def test_events_are_immutable():
    event = LastBlock(make_header(1))
    with pytest.raises(AttributeError):
        event.header = make_header(2)  # type: ignore[misc]


class TestModels:
    def test_block_header(self):
        header = make_header(100, nonce=7)
        assert len(header.raw) == 80
        assert header.prev_hash == "00" * 32
        assert header.timestamp == 1_700_000_000 + 100 * 600
        assert len(header.block_hash) == 64

    def test_block_header_validation(self):
        with pytest.raises(ValidationError):
            BlockHeader(height=-1, header_hex="00" * 80)
        with pytest.raises(ValidationError):
            BlockHeader(height=1, header_hex="00" * 79)

    def test_history_record(self):
        record = HistoryRecord(
            txid=make_txid("a"),
            height=0,
            address="bcrt1qexample",
            script_pubkey="0014" + "00" * 20,
            index=3,
            change=False,
        )
        assert not record.is_confirmed
        assert record.fee is None

    def test_utxo_record(self):
        utxo = UtxoRecord(
            txid=make_txid("b"),
            height=120,
            pos=1,
            value=5_000,
            address="bcrt1qexample",
            script_pubkey="0014" + "00" * 20,
            index=0,
            change=True,
        )
        assert utxo.outpoint == f"{make_txid('b')}:1"
        assert utxo.is_confirmed
