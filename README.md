# imagefs

Filesystem building blocks for producing container image layers on a POSIX
host. It uses only the standard library.

## Modules

- `imagefs.layered_map.LayeredMap` tracks the files added (with their hashes)
  and deleted in each layer. `snapshot()` folds the top layer into the merged
  image and opens a new one. `check_file_change(path)` compares a file's hash
  with the image before the top layer. `add`, `add_delete` and
  `get_current_paths` maintain and read the layers, and `key()` gives a SHA-256
  key of the top layer's adds and deletes.
- `imagefs.timing` keeps running totals of time spent in named categories:
  `start`, `Timer`, `TimedRun` (`stop`, `summary`, `json`), `format_duration`,
  and `summary()` / `json_summary()` for the shared `DEFAULT_RUN`.
- `imagefs.paths` holds the ignore list: `IgnoreList`, `IgnoreListEntry` and
  `default_ignore_list`. `IgnoreList.detect_filesystem` and
  `IgnoreList.reset` can add mount points from a mountinfo file. The module
  also has path helpers: `has_filepath_prefix`, `parent_directories`,
  `parent_directories_without_leading_slash`, `relative_files`,
  `filepath_exists`, `is_dest_dir`, `get_symlink` and `eval_symlink`. The
  symlink helpers raise `NotSymlinkError` for other kinds of path.
- `imagefs.context` holds `FileContext` with `excludes_file`. It reads
  `.dockerignore` files through `new_file_context_from_dockerfile`, which
  prefers `<dockerfile>.dockerignore`, and `read_dockerignore`. Pattern
  matching, including `!` re-inclusion, is done by `matches`.
- `imagefs.fileops` extracts tar members and whole uncompressed archives
  (`extract_file`, `untar`). It creates and copies files, directories and
  symlinks while keeping modes and ownership (`create_file`, `copy_file`,
  `copy_dir`, `copy_symlink`, `copy_file_or_symlink`, `copy_ownership`,
  `mkdir_all_with_permissions`, `determine_target_file_ownership`). It also
  sets file times (`set_file_times`), opens archive files
  (`create_target_tarfile`) and downloads a URL to a file with mode 0600
  (`download_file_to_dest`).
- `imagefs.layers` applies `Layer` tar streams to a root with
  `get_fs_from_layers`, honouring `.wh.` whiteouts and the ignore list.
  `delete_filesystem` clears a root while sparing ignored paths. `walk_fs`
  finds changed and vanished paths within a timeout and raises
  `WalkTimeoutError` when the walk takes too long; the timeout defaults to
  `SNAPSHOT_TIMEOUT_DURATION` or 90 minutes. `get_fs_info_map` finds new or
  changed paths by their stat data.
- `imagefs.commands` resolves Dockerfile instruction arguments:
  - variable, quote and escape expansion: `process_word`,
    `resolve_environment_replacement`, `resolve_environment_replacement_list`
  - wildcard sources: `contains_wildcards`, `resolve_sources`, `match_sources`
  - destinations: `destination_filepath`, `url_destination_filepath`
  - copy checks: `is_srcs_valid`, `resolve_env_and_wildcards`
  - `ENV` merging: `update_config_env`
  - `--chown` lookup: `get_user_group`, `get_uid_and_gid_from_string`,
    `lookup_user`

  Invalid input raises `CommandError`.
- `imagefs.groups` parses `/etc/group` style lines (`local_groups`, `Group`)
  and lists a user's group ids (`group_ids`).

## Examples

```python
import hashlib
from imagefs.layered_map import LayeredMap

def digest(path):
    with open(path, "rb") as fh:
        return hashlib.sha256(fh.read()).hexdigest()

layers = LayeredMap(digest)
layers.snapshot()
if layers.check_file_change("/etc/hostname"):
    layers.add("/etc/hostname")
print(layers.key())
print(sorted(layers.get_current_paths()))
```

```python
from imagefs.commands import resolve_environment_replacement

resolve_environment_replacement("/$a/b/", ["a=/path/"], True)  # '/path/b/'
```

## What it does not do

This is a library only. It has no command-line program. It does not write
snapshot tarballs of changed files. It does not pull or push images and does
not locate registry configuration. Layers are handed to it as uncompressed tar
streams through `Layer`.

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```

Extracting files and changing ownership often needs root privileges, as it
does for any image builder.