# nodeeraser

`nodeeraser` works out which container images on a node no running container
uses. It leaves alone the images named in exclusion lists and removes the
rest through a container runtime (CRI) client. It can also take a list of
images from a scanner, so that only non-compliant images are removed.

## Installation

```
pip install nodeeraser
```

To run the test suite:

```
pip install "nodeeraser[test]"
pytest
```

## Modules

- `nodeeraser.utils` covers endpoint parsing (`parse_endpoint`,
  `parse_endpoint_with_fallback_protocol`, `get_address`), the `Image` record,
  and the running and non-running image maps (`get_running_images`,
  `get_non_running_images`). It also holds exclusion matching (`is_excluded`,
  `parse_excluded`), image list files (`parse_image_list`) and the named-pipe
  hand-off between components (`read_collect_scan_pipe`,
  `write_scan_erase_pipe`).
- `nodeeraser.cri` holds the image and container records, `V1Client` and
  `V1Alpha2Client`, and `new_client_with_fallback`. That function asks a
  connection for its API version over v1 and then over v1alpha2. If neither
  works it raises `AggregateError`.
- `nodeeraser.eraser.remove_images` deletes the targeted images that no
  container uses and returns how many it removed. A `*` target removes every
  non-running image that is not excluded.
- `nodeeraser.collector.get_images` returns every non-running image that is
  not excluded, one entry per image.
- `nodeeraser.scanner_template.ImageProvider` is what a custom scanner uses.
  It receives the collected images, sends back the non-compliant ones (and
  the ones whose scan failed, unless told otherwise) and waits for the eraser
  to signal completion.
- `nodeeraser.trivy` holds the scanner configuration (`Config`,
  `default_config`, `load_config`) and the option maps
  (`parse_comma_separated_options`, `init_option_maps`, `true_keys`). It also
  holds `scan`, a loop that runs any object with a `scan(image)` method over
  the images, with an overall deadline.
- `nodeeraser.metrics` has in-process counters and histograms through
  `MeterProvider`. `export_metrics` posts them as OTLP/HTTP JSON to
  `<endpoint>/v1/metrics`.
- `nodeeraser.logger.configure` sets up the package logger. At `debug` it
  writes readable lines; at every other level it writes one JSON object per
  record.
- `nodeeraser.version.get_user_agent` builds the user agent string.

## Example

```python
from nodeeraser.utils import is_excluded, parse_endpoint, process_repo_digests

protocol, address = parse_endpoint("unix:///run/containerd/containerd.sock")
# ("unix", "/run/containerd/containerd.sock")

digests, errors = process_repo_digests(["docker.io/library/alpine @ sha256:abc"])

is_excluded({"docker.io/library/*"}, "docker.io/library/alpine:3.7.3", {})
# True
```

`remove_images` and `get_images` accept any client that provides
`list_images`, `list_containers` and `delete_image`. That can be a
`V1Client`, a `V1Alpha2Client` or a stand-in for testing.

## Exclusion lists

`parse_excluded(directory)` reads every subdirectory of `directory` whose
name starts with `exclude-`. From each it takes the first `.json` file, in
name order, which has this form:

```json
{"excluded": ["docker.io/library/*", "registry.example.com/team/app:*"]}
```

An entry matches an image by ID, by name or by digest. An entry that ends in
`/*` matches a whole repository. An entry that ends in `:*` matches every tag
of an image.

## Commands

Two commands are installed: `nodeeraser-collector` (options `--runtime`,
`--scan-disabled`, `--log-level`) and `nodeeraser-eraser` (options
`--runtime`, `--imagelist`, `--log-level`). Each describes its options with
`--help`:

```
nodeeraser-collector --help
nodeeraser-eraser --help
```

## What the package does not do

The package has no transport to a container runtime. It does not include a
gRPC connection to the runtime's socket. The clients in `nodeeraser.cri`
need a connection object, supplied by the caller, that hands out the image
and runtime services. Because of this the two commands parse their options
and set up logging, and then exit with status 1, reporting that no runtime
connection is available.

The package also does not scan images for vulnerabilities itself: it has no
vulnerability database. `nodeeraser.trivy.scan` runs whatever scanner object
it is given.