"""Debezium envelope decoding."""

from cdc_engine.decoder.event_decoder import EventDecoder

__all__ = ["EventDecoder"]
