import json
import logging

from temporal_operator.logstreams import JsonFormatter


def make_record(msg: str, args) -> logging.LogRecord:
    return logging.LogRecord("app", logging.INFO, __file__, 1, msg, args, None)


class TestJsonFormatter:
    def test_metadata(self):
        record = make_record("reconcile started", ({"owner": "default/demo"},))
        line = json.loads(JsonFormatter().format(record))
        assert line["msg"] == "reconcile started"
        assert line["owner"] == "default/demo"
        assert line["level"] == "INFO"
        assert line["logger"] == "app"

    def test_metadata_cannot_shadow_fields(self):
        record = make_record("foo", ({"msg": "bar", "level": "x"},))
        line = json.loads(JsonFormatter().format(record))
        assert (line["msg"], line["level"]) == ("foo", "INFO")

    def test_format_args(self):
        record = make_record("%s of %d", ("one", 2))
        line = json.loads(JsonFormatter().format(record))
        assert line["msg"] == "one of 2"
