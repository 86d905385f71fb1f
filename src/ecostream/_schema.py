"""Binary telemetry schema (vendor wire contract).

The broker delivers protobuf frames: a ``SendHeaderMsg`` envelope whose
``Header`` carries a command id and a nested ``pdata`` payload.  The
message classes are built at import time from descriptors so no generated
``_pb2`` modules are needed.  Only the messages this package decodes are
described; unknown fields survive parsing untouched.
"""

from __future__ import annotations

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

_PACKAGE = "ecostream.wire"

_F = descriptor_pb2.FieldDescriptorProto

_SCALARS = {
    "int32": _F.TYPE_INT32,
    "sint32": _F.TYPE_SINT32,
    "uint32": _F.TYPE_UINT32,
    "string": _F.TYPE_STRING,
    "bytes": _F.TYPE_BYTES,
}

# (number, name, type[, "repeated"])
_HEADER = [
    (1, "pdata", "bytes"),
    (2, "src", "int32"),
    (3, "dest", "int32"),
    (4, "d_src", "int32"),
    (5, "d_dest", "int32"),
    (6, "enc_type", "int32"),
    (7, "check_type", "int32"),
    (8, "cmd_func", "int32"),
    (9, "cmd_id", "int32"),
    (10, "data_len", "int32"),
    (11, "need_ack", "int32"),
    (12, "is_ack", "int32"),
    (14, "seq", "int32"),
    (15, "product_id", "int32"),
    (16, "version", "int32"),
    (17, "payload_ver", "int32"),
    (18, "time_snap", "int32"),
    (19, "is_rw_cmd", "int32"),
    (20, "is_queue", "int32"),
    (21, "ack_type", "int32"),
    (22, "code", "string"),
    (24, "module_sn", "string"),
    (25, "device_sn", "string"),
]

_SEND_HEADER_MSG = [
    (1, "msg", "Header"),
]

_INVERTER_HEARTBEAT = [
    (1, "inv_error_code", "uint32"),
    (2, "pv1_error_code", "uint32"),
    (3, "inv_warning_code", "uint32"),
    (4, "pv1_warning_code", "uint32"),
    (5, "pv2_error_code", "uint32"),
    (6, "pv2_warning_code", "uint32"),
    (7, "bat_error_code", "uint32"),
    (8, "bat_warning_code", "uint32"),
    (9, "llc_error_code", "uint32"),
    (10, "llc_warning_code", "uint32"),
    (11, "pv1_status", "uint32"),
    (12, "pv2_status", "uint32"),
    (13, "bat_status", "uint32"),
    (14, "llc_status", "uint32"),
    (15, "inv_status", "uint32"),
    (16, "pv1_input_volt", "int32"),
    (17, "pv1_op_volt", "int32"),
    (18, "pv1_input_cur", "int32"),
    (19, "pv1_input_watts", "int32"),
    (20, "pv1_temp", "int32"),
    (21, "pv2_input_volt", "int32"),
    (22, "pv2_op_volt", "int32"),
    (23, "pv2_input_cur", "int32"),
    (24, "pv2_input_watts", "int32"),
    (25, "pv2_temp", "int32"),
    (26, "bat_input_volt", "int32"),
    (27, "bat_op_volt", "int32"),
    (28, "bat_input_cur", "int32"),
    (29, "bat_input_watts", "int32"),
    (30, "bat_temp", "int32"),
    (31, "bat_soc", "uint32"),
    (32, "llc_input_volt", "int32"),
    (33, "llc_op_volt", "int32"),
    (34, "llc_temp", "int32"),
    (35, "inv_input_volt", "int32"),
    (36, "inv_op_volt", "int32"),
    (37, "inv_output_cur", "int32"),
    (38, "inv_output_watts", "int32"),
    (39, "inv_temp", "int32"),
    (40, "inv_freq", "int32"),
    (41, "inv_dc_cur", "int32"),
    (42, "bp_type", "int32"),
    (43, "inv_relay_status", "int32"),
    (44, "pv1_relay_status", "int32"),
    (45, "pv2_relay_status", "int32"),
    (46, "install_country", "uint32"),
    (47, "install_town", "uint32"),
    (48, "permanent_watts", "uint32"),
    (49, "dynamic_watts", "uint32"),
    (50, "supply_priority", "uint32"),
    (51, "lower_limit", "uint32"),
    (52, "upper_limit", "uint32"),
    (53, "inv_on_off", "uint32"),
    (54, "wireless_error_code", "uint32"),
    (55, "wireless_warning_code", "uint32"),
    (56, "inv_brightness", "uint32"),
    (57, "heartbeat_frequency", "uint32"),
    (58, "rated_power", "uint32"),
    (61, "timestamp", "uint32"),
]

_POWER_ITEM = [
    (1, "timestamp", "uint32"),
    (2, "timezone", "sint32"),
    (3, "inv_to_grid_power", "uint32"),
    (4, "inv_to_plug_power", "uint32"),
    (5, "battery_power", "int32"),
    (6, "pv1_output_power", "uint32"),
    (7, "pv2_output_power", "uint32"),
]

_POWER_PACK = [
    (1, "sys_seq", "uint32"),
    (2, "sys_power_stream", "PowerItem", "repeated"),
]


def _add_message(
    file_proto: descriptor_pb2.FileDescriptorProto,
    name: str,
    fields: list[tuple[object, ...]],
) -> None:
    message = file_proto.message_type.add(name=name)
    for number, field_name, type_name, *label in fields:
        field = message.field.add(name=field_name, number=number)
        field.label = _F.LABEL_REPEATED if label == ["repeated"] else _F.LABEL_OPTIONAL
        if type_name in _SCALARS:
            field.type = _SCALARS[type_name]
        else:
            field.type = _F.TYPE_MESSAGE
            field.type_name = f".{_PACKAGE}.{type_name}"


def _build_pool() -> descriptor_pool.DescriptorPool:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="ecostream/wire.proto", package=_PACKAGE, syntax="proto2"
    )
    _add_message(file_proto, "Header", _HEADER)
    _add_message(file_proto, "SendHeaderMsg", _SEND_HEADER_MSG)
    _add_message(file_proto, "InverterHeartbeat", _INVERTER_HEARTBEAT)
    _add_message(file_proto, "PowerItem", _POWER_ITEM)
    _add_message(file_proto, "PowerPack", _POWER_PACK)
    pool = descriptor_pool.DescriptorPool()
    pool.Add(file_proto)
    return pool


_pool = _build_pool()


def _message_class(name: str) -> type:
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{_PACKAGE}.{name}"))


Header = _message_class("Header")
SendHeaderMsg = _message_class("SendHeaderMsg")
InverterHeartbeat = _message_class("InverterHeartbeat")
PowerItem = _message_class("PowerItem")
PowerPack = _message_class("PowerPack")
