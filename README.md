# egress

Building blocks for the service side of a media egress system: the
output type and codec rules, handling of GStreamer log lines and
pipeline errors, CPU and memory admission control, a registry of
handler processes, Prometheus metrics aggregation and an HTTP debug
endpoint. It has no dependencies beyond the standard library.

## Modules

- `egress.types` – `RequestType`, `SourceType`, `EgressType`,
  `MimeType`, `Profile`, `OutputType`, `FileExtension` and
  `EgressStatus`, the codec and extension tables
  (`CODEC_COMPATIBILITY`, `DEFAULT_AUDIO_CODECS`, `DEFAULT_VIDEO_CODECS`,
  `FILE_EXTENSION_FOR_OUTPUT_TYPE`, `STREAM_OUTPUT_TYPES`, ...), the
  helpers `get_output_type_compatible_with_codecs`,
  `is_output_type_compatible_with_codecs` and `get_map_intersection`,
  and the `StartEgressRequest` and `EgressInfo` records.
- `egress.gstlog` – `format_gst_log` filters and formats log lines,
  `parse_debug_info` splits an error's debug string into a `DebugInfo`,
  `classify_error` turns it into an `ErrorAction`, and
  `segment_params`, `image_information`, `first_sample_start_date` and
  `image_sink_id` read element messages. Malformed messages raise
  `GstPipelineError`.
- `egress.monitor` – `Monitor`, configured by a `CPUCostConfig`, holds
  CPU for accepted requests, tracks per-process usage from `ProcStats`
  samples, and calls `kill_process` on its service when the node stays
  overloaded or runs out of memory. It raises
  `EgressAlreadyExistsError` and `NotEnoughCPUError`, and reports
  `CPUExhaustedError` and `OOMError`.
- `egress.metrics` – `parse_metric_families` and
  `render_metric_families` for the Prometheus text format,
  `apply_default_label` and `deserialize_metrics`, and `MetricsService`,
  which merges metrics stored from finished handlers with those gathered
  from running ones.
- `egress.handler_metrics` – `HandlerMonitor`, per-handler upload,
  upload-latency histogram, backup-storage and channel-size metrics,
  read with `collect`.
- `egress.process` – `ProcessManager` launches handler commands in a new
  session, waits for them to report ready, and tracks each `Process` by
  egress id; `EgressNotFoundError` when an id is unknown.
- `egress.debug` – `DebugService` serves `/gst_pipeline/<egress_id>`
  and `/pprof/...` over HTTP; `error_code` maps an exception to a status.

## Examples

Keys of one codec map that are enabled in another:

```python
from egress.types import get_map_intersection

get_map_intersection({"video/h264": True, "video/vp8": True},
                     {"video/h264": True, "audio/aac": True})
# {"video/h264"}
```

Reading a pipeline error:

```python
from egress.gstlog import classify_error, parse_debug_info

info = parse_debug_info(
    "gstbasesrc.c(3132): gst_base_src_loop (): "
    "/GstPipeline:pipeline/GstBin:video_bin/GstAppSrc:app_TR_123:\n"
    "streaming stopped, reason not-negotiated (-4)"
)
classify_error(info, eos_sent=False)
# ErrorAction.STREAM_STOPPED
```

## Behaviour worth knowing

- A request is admitted only when the available CPU covers its cost
  (its `estimated_cpu`, or the configured cost for its type). With no
  requests running the whole machine counts as available; otherwise
  availability is the configured maximum utilisation minus held and
  measured usage. Held CPU is released after 30 seconds.
- Room composite and web requests also count against
  `max_concurrent_web`.
- A handler that does not report ready within the launch timeout
  (10 seconds by default) is killed and `EgressNotFoundError` is raised.

## What this package does not do

There is no top-level server object and no command: nothing here
receives start requests from a message bus, scores affinity, handles
handler callbacks or drains on shutdown. The transport to handler
processes is not included either; `ProcessManager` and `DebugService`
take a client object supplied by the caller (with `get_metrics`,
`get_pipeline_dot` and `get_pprof`). `MetricsService` gathers and
renders metrics but does not serve them over HTTP.

## Tests

The test suite uses pytest and is installed with the `test` extra.