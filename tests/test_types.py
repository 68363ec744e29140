import pytest

from egress.types import (
    CODEC_COMPATIBILITY,
    DEFAULT_AUDIO_CODECS,
    DEFAULT_VIDEO_CODECS,
    FILE_EXTENSION_FOR_OUTPUT_TYPE,
    EgressInfo,
    EgressStatus,
    MimeType,
    OutputType,
    RequestType,
    StartEgressRequest,
    get_map_intersection,
    get_output_type_compatible_with_codecs,
    is_output_type_compatible_with_codecs,
)


def test_get_map_intersection():
    codecs = {}
    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.UNKNOWN_FILE])
    assert res == set()

    codecs[MimeType.H264] = True
    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.OGG])
    assert res == set()

    codecs[MimeType.VP8] = True
    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.MP4])
    assert res == {MimeType.H264}


def test_get_map_intersection_ignores_disabled_entries_in_second_map():
    res = get_map_intersection({MimeType.AAC, MimeType.H264}, {MimeType.AAC: True, MimeType.H264: False})
    assert res == {MimeType.AAC}


def test_get_output_types_compatible_with_codecs():
    output_types = []
    audio_codecs = {}
    video_codecs = {}

    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    output_types += [OutputType.OGG, OutputType.MP4]
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    audio_codecs[MimeType.AAC] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    video_codecs[MimeType.VP8] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    video_codecs[MimeType.H264] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == OutputType.MP4


def test_none_codec_set_is_not_checked():
    res = get_output_type_compatible_with_codecs([OutputType.OGG, OutputType.MP4], None, {MimeType.H264})
    assert res == OutputType.MP4


def test_is_output_type_compatible_with_codecs():
    assert is_output_type_compatible_with_codecs(OutputType.WEBM, {MimeType.VP9})
    assert not is_output_type_compatible_with_codecs(OutputType.RTMP, {MimeType.VP8})
    assert not is_output_type_compatible_with_codecs(OutputType.JSON, {MimeType.H264})


def test_default_codecs_are_compatible_with_their_output_types():
    for table in (DEFAULT_AUDIO_CODECS, DEFAULT_VIDEO_CODECS):
        for ot, codec in table.items():
            assert is_output_type_compatible_with_codecs(ot, {codec})


def test_file_extension_for_output_type():
    ot = get_output_type_compatible_with_codecs([OutputType.OGG, OutputType.HLS], None, {MimeType.H264})
    assert ot == OutputType.HLS
    assert FILE_EXTENSION_FOR_OUTPUT_TYPE[ot] == ".m3u8"
    unknown = get_output_type_compatible_with_codecs([], None, None)
    assert unknown is OutputType.UNKNOWN_FILE
    assert unknown.value == ""


@pytest.mark.parametrize(
    "request_type, expected",
    [
        (RequestType.ROOM_COMPOSITE, True),
        (RequestType.WEB, True),
        (RequestType.TRACK, False),
    ],
)
def test_request_type_is_web(request_type, expected):
    req = StartEgressRequest.from_dict(StartEgressRequest("EG_abc", request_type).to_dict())
    assert req.request_type.is_web is expected


def test_start_egress_request_round_trip():
    req = StartEgressRequest("EG_abc", RequestType.WEB, audio_only=True, estimated_cpu=1.5, request={"url": "x"})
    assert StartEgressRequest.from_dict(req.to_dict()) == req


def test_start_egress_request_rejects_unknown_type():
    with pytest.raises(ValueError):
        StartEgressRequest.from_dict({"egress_id": "EG_abc", "request_type": "bogus"})


def test_egress_info_fail():
    info = EgressInfo("EG_abc")
    info.fail("internal error", 500, now_ns=42)
    assert info.status == EgressStatus.FAILED
    assert info.error == "internal error"
    assert info.error_code == 500
    assert info.updated_at == info.ended_at == 42
    assert info.to_dict()["status"] == "FAILED"