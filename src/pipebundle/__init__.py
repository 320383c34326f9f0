"""pipebundle -- Self-extracting distribution tooling for data-pipeline CLIs.

This package turns a core pipeline executable plus a set of independently
versioned plugin executables (taps, targets, transformers) into a single
self-extracting installer file, installs that file on a target host, wires
up the plugin discovery slots the core relies on, and verifies installs.

Typical workflow::

    pipebundle build bundle --config pipebundle.json   # run packaging jobs
    pipebundle build installer dist/bundle             # write the .run file
    sh pipelinewise-installer.run ~/pipelinewise       # on the target host
    pipebundle verify ~/pipelinewise                   # inspect an install

Modules that run inside the installer on the target host (``exit_codes``,
``exceptions``, ``manifest``, ``settings``, ``hybrid``, ``compat``,
``slots``, ``pipeline``, ``installer``, ``verify``) import only the
standard library. The remaining modules form the host-side Typer CLI.

Modules:
    app: Typer application and CLI entry point.
    builder: Archive Builder (tarball + preamble -> hybrid installer).
    installer: Installer Runtime steps and the embedded entry point.
    slots: Discovery Setup and the in-memory slot registry.
    compat: Tri-state native-dependency compatibility verifier.
    verify: Read-only Verification Suite.
"""

__version__ = "0.4.1"
