"""Composition of the R programs sent to evaluation sessions.

A batch evaluation is a single R program written to the session's stdin.
It runs the user's code through ``evaluate::evaluate`` inside a session
scoped environment, prints the captured output, then announces side
artifacts and the environment snapshot with in-band sentinel lines:

    <text output>
    <IMAGE><plot file>          (one line per plot)
    <ENV>
    <environment JSON>
    <END>

Widget lines (<WIDGET><file>) appear inside the text output, because
widgets are printed while the user's code is running.
"""

import json
import re
import string
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from ..config import RBridgeConfig

# Name of the session environment that holds user variables across calls.
SESSION_ENV = ".rbridge_env"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class _RTemplate(string.Template):
    # R code is full of $ (list access) and braces, so neither works as delimiter.
    delimiter = "@"


def r_string(value: Any) -> str:
    """Quote a Python value as an R string literal."""
    return json.dumps(str(value), ensure_ascii=False)


def r_path(path: Any) -> str:
    """Quote a filesystem path for R, always with forward slashes."""
    return r_string(str(path).replace("\\", "/"))


def r_bool(value: bool) -> str:
    return "TRUE" if value else "FALSE"


def safe_name(value: str) -> str:
    """Make a chunk id usable inside generated file names."""
    return _UNSAFE_NAME_CHARS.sub("_", value) or "chunk"


def _is_enabled(value: Any) -> bool:
    return not (value == "false" or value is False)


@dataclass(frozen=True)
class EvaluationOptions:
    """Capture options for one evaluation.

    Every option is on unless explicitly given as the string "false".
    """
    echo: bool = True
    warning: bool = True
    error: bool = True
    include: bool = True
    output: bool = True

    @classmethod
    def from_mapping(cls, options: Optional[Mapping[str, Any]] = None) -> "EvaluationOptions":
        options = options or {}
        return cls(
            echo=_is_enabled(options.get("echo")),
            warning=_is_enabled(options.get("warning")),
            error=_is_enabled(options.get("error")),
            include=_is_enabled(options.get("include")),
            output=_is_enabled(options.get("output")),
        )

    @property
    def emits_output(self) -> bool:
        """Whether text, plots and widgets are returned at all."""
        return self.output and self.include


@dataclass(frozen=True)
class Sentinels:
    """In-band markers for one evaluation.

    All four carry a per-call token so a stale line from an earlier call
    can never be mistaken for one of this call's markers.
    """
    completion: str
    image: str
    environment: str
    widget: str

    @classmethod
    def create(cls, timestamp_ms: Optional[int] = None, token: Optional[str] = None) -> "Sentinels":
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        if token is None:
            token = uuid.uuid4().hex[:8]
        return cls(
            completion=f"__RBRIDGE_END_{timestamp_ms}_{token}__",
            image=f"__RBRIDGE_PLOT_{token}__",
            environment=f"__RBRIDGE_ENV_{timestamp_ms}_{token}__",
            widget=f"__RBRIDGE_WIDGET_{token}__",
        )


_PREAMBLE = _RTemplate("""\
suppressPackageStartupMessages(library(jsonlite))
if (!exists("@{env}")) {
  @{env} <- new.env()
}
options(browser = "false")
options(bitmapType = "cairo")
options(device = function(...) grDevices::jpeg(filename = tempfile(), width = @{width}, height = @{height}, ...))
""")


_HELP_PRINTER = _RTemplate("""\
print.help_files_with_topic <- function(x, ...) {
  paths <- as.character(x)
  topic <- attr(x, "topic")
  if (!length(paths)) {
    writeLines(gettextf("No documentation for %s in specified packages and libraries", sQuote(topic)))
    return(invisible(x))
  }
  if (isTRUE(attr(x, "tried_all_packages"))) {
    pkgs <- basename(unique(dirname(dirname(paths))))
    writeLines(gettextf("Help for topic %s is not in any loaded package but can be found in: %s",
                        sQuote(topic), paste(pkgs, collapse = ", ")))
    return(invisible(x))
  }
  file <- paths[1L]
  pkgname <- basename(dirname(dirname(file)))
  tools::Rd2HTML(utils:::.getHelpFile(file), out = @{help_path}, package = pkgname)
  invisible(x)
}
""")

_NO_HELP_PRINTER = """\
if (exists("print.help_files_with_topic", envir = globalenv(), inherits = FALSE)) {
  rm("print.help_files_with_topic", envir = globalenv())
}
"""


_PROGRAM = _RTemplate("""\
suppressPackageStartupMessages({
  library(evaluate)
  library(jsonlite)
})
@{pandoc}
.rbridge_opts <- list(
  echo = @{echo},
  warning = @{warning},
  error = @{error},
  include = @{include},
  output = @{output}
)
.rbridge_scratch <- @{scratch}
.rbridge_widgets <- 0L
if (suppressWarnings(requireNamespace("htmlwidgets", quietly = TRUE))) {
  registerS3method("print", "htmlwidget", function(x, ..., viewer = NULL) {
    .rbridge_widgets <<- .rbridge_widgets + 1L
    widget_file <- paste0("widget_@{chunk}_", .rbridge_widgets, "_", format(Sys.time(), "%Y%m%d%H%M%S"), ".html")
    htmlwidgets::saveWidget(x, file.path(.rbridge_scratch, widget_file), selfcontained = TRUE)
    cat("@{widget_sentinel}", widget_file, "\\n", sep = "")
    invisible(x)
  }, envir = asNamespace("htmlwidgets"))
}
@{help}
.rbridge_started <- Sys.time()
if (!exists("@{env}")) {
  @{env} <- new.env()
}

.rbridge_results <- evaluate::evaluate(@{code}, envir = @{env})
.rbridge_outputs <- character()
.rbridge_images <- character()

for (.rbridge_res in .rbridge_results) {
  if (inherits(.rbridge_res, "source")) {
    next
  } else if (inherits(.rbridge_res, "warning")) {
    if (.rbridge_opts$warning && .rbridge_opts$include) {
      .rbridge_outputs <- c(.rbridge_outputs, paste("Warning:", conditionMessage(.rbridge_res)))
    }
  } else if (inherits(.rbridge_res, "message")) {
    if (.rbridge_opts$output && .rbridge_opts$include) {
      .rbridge_outputs <- c(.rbridge_outputs, sub("\\n$", "", conditionMessage(.rbridge_res)))
    }
  } else if (inherits(.rbridge_res, "error")) {
    if (.rbridge_opts$error && .rbridge_opts$include) {
      .rbridge_outputs <- c(.rbridge_outputs, paste("Error:", conditionMessage(.rbridge_res)))
    }
  } else if (is.character(.rbridge_res)) {
    if (.rbridge_opts$output && .rbridge_opts$include) {
      .rbridge_outputs <- c(.rbridge_outputs, .rbridge_res)
    }
  } else if (inherits(.rbridge_res, "recordedplot")) {
    if (.rbridge_opts$output && .rbridge_opts$include) {
      plot_file <- paste0("plot_@{chunk}_", length(.rbridge_images) + 1, "_", format(Sys.time(), "%Y%m%d%H%M%S"), ".jpg")
      grDevices::jpeg(filename = file.path(.rbridge_scratch, plot_file), width = @{width}, height = @{height})
      grDevices::replayPlot(.rbridge_res)
      grDevices::dev.off()
      .rbridge_images <- c(.rbridge_images, plot_file)
    }
  }
}

if (.rbridge_opts$output && .rbridge_opts$include && requireNamespace("gganimate", quietly = TRUE)) {
  .rbridge_anim <- try(gganimate::last_animation(), silent = TRUE)
  if (is.character(.rbridge_anim[1]) && !is.na(file.info(.rbridge_anim[1])$mtime) &&
      file.info(.rbridge_anim[1])$mtime > .rbridge_started) {
    anim_file <- paste0("animation_@{chunk}_", format(Sys.time(), "%Y%m%d%H%M%S"), ".gif")
    file.copy(.rbridge_anim[1], file.path(.rbridge_scratch, anim_file))
    .rbridge_images <- c(.rbridge_images, anim_file)
  }
}

if (.rbridge_opts$output && .rbridge_opts$include && length(.rbridge_outputs) > 0) {
  cat(paste(.rbridge_outputs, collapse = "\\n"), "\\n", sep = "")
}

if (.rbridge_opts$output && .rbridge_opts$include) {
  for (.rbridge_img in .rbridge_images) {
    cat("@{image_sentinel}", .rbridge_img, "\\n", sep = "")
  }
}

.rbridge_snapshot <- lapply(ls(envir = @{env}), function(var_name) {
  value <- get(var_name, envir = @{env})
  preview <- paste(utils::capture.output(utils::str(value, max.level = 0)), collapse = " ")
  list(
    name = var_name,
    type = class(value),
    size = as.numeric(utils::object.size(value)),
    value = substr(preview, 1, @{preview_length})
  )
})
cat("@{env_sentinel}\\n")
cat(jsonlite::toJSON(.rbridge_snapshot, auto_unbox = TRUE))
cat("\\n@{completion_sentinel}\\n")
""")


def build_session_preamble(config: RBridgeConfig) -> str:
    """R code written once to every freshly spawned session."""
    return _PREAMBLE.substitute(
        env=SESSION_ENV,
        width=config.plot_width,
        height=config.plot_height,
    )


def build_program(
    code: str,
    chunk_id: str,
    scratch_dir: Path,
    sentinels: Sentinels,
    options: EvaluationOptions,
    config: RBridgeConfig,
    help_path: Optional[Path] = None,
) -> str:
    """Wrap user code into the instrumented R program for one evaluation.

    Args:
        code: R source to evaluate.
        chunk_id: Identifier of the chunk, used in artifact file names.
        scratch_dir: Per-evaluation directory for plots, widgets and help.
        sentinels: Markers for this evaluation.
        options: Capture options.
        config: Plot dimensions, preview length and pandoc location.
        help_path: Where to render help, when this is a help request.
    """
    pandoc = ""
    if config.pandoc_path:
        pandoc = f"Sys.setenv(RSTUDIO_PANDOC = {r_path(config.pandoc_path)})"

    if help_path is not None:
        help_block = _HELP_PRINTER.substitute(help_path=r_path(help_path))
    else:
        help_block = _NO_HELP_PRINTER

    return _PROGRAM.substitute(
        pandoc=pandoc,
        echo=r_bool(options.echo),
        warning=r_bool(options.warning),
        error=r_bool(options.error),
        include=r_bool(options.include),
        output=r_bool(options.output),
        scratch=r_path(scratch_dir),
        chunk=safe_name(chunk_id),
        help=help_block,
        env=SESSION_ENV,
        code=r_string(code),
        width=config.plot_width,
        height=config.plot_height,
        preview_length=config.preview_length,
        image_sentinel=sentinels.image,
        widget_sentinel=sentinels.widget,
        env_sentinel=sentinels.environment,
        completion_sentinel=sentinels.completion,
    )
