r"""
Step script and workspace file templates.

Templates are compiled once into a read-only ``ScriptTemplates`` registry
and shared by every render call. Scripts are executed by ``sh`` from the
workspace root; each line ending in `` && \`` chains into the next so the
first failing command decides the script's exit code.
"""

import shlex
from types import MappingProxyType
from typing import Mapping, Optional

from jinja2 import Environment, StrictUndefined, Template

from ..exceptions import UnknownTypeError
from ..models import StepType


INIT_SCRIPT = r"""#!/bin/sh
git clone {{ repo_address|shquote }} code && \
cd {{ code_dir|shquote }} && \
git checkout -q {{ revision|shquote }} && echo check out $(git rev-parse --short HEAD). && \
ln -sf {{ backend_file }} . && \
terraform init -input=false{% for arg in step_args %} {{ arg|shquote }}{% endfor %}
"""

PLAN_SCRIPT = r"""#!/bin/sh
cd {{ code_dir|shquote }} && \
terraform plan -input=false -out={{ plan_file }}{% if tf_vars_file %} -var-file={{ tf_vars_file|shquote }}{% endif %}{% for arg in step_args %} {{ arg|shquote }}{% endfor %} && \
terraform show -no-color -json {{ plan_file }} >{{ plan_json_path }}
"""

# A plan file already carries its variables, so no -var-file here.
APPLY_SCRIPT = r"""#!/bin/sh
cd {{ code_dir|shquote }} && \
terraform apply -input=false -auto-approve{% for arg in step_args %} {{ arg|shquote }}{% endfor %} {{ plan_file }}
"""

CONFIGURE_SCRIPT = r"""#!/bin/sh
export ANSIBLE_HOST_KEY_CHECKING="False"
export ANSIBLE_TF_DIR="."
export ANSIBLE_NOCOWS="1"

cd {{ code_dir|shquote }} && ansible-playbook \
--inventory {{ inventory_path|shquote }} \
--user "root" \
--private-key {{ private_key_path }} \
--extra-vars @{{ play_vars_path }} \
{% if play_vars_file %}--extra-vars @{{ play_vars_file|shquote }} \
{% endif %}{% for arg in step_args %}{{ arg|shquote }} \
{% endfor %}{{ playbook|shquote }}
"""

COMMAND_SCRIPT = r"""#!/bin/sh
if [ -d {{ code_dir|shquote }} ]; then cd {{ code_dir|shquote }}; fi
{% for command in commands %}{{ command }} && \
{% endfor %}true
"""

COLLECT_SCRIPT = r"""#!/bin/sh
# state collect command
cd {{ code_dir|shquote }} && \
terraform show -no-color -json >{{ state_json_path }}
"""

PARSE_SCRIPT = r"""#!/bin/sh
cd {{ code_dir|shquote }} && \
terrascan scan --config-only -d . -o json >{{ parse_json_path }}
"""

SCAN_SCRIPT = r"""#!/bin/sh
cd {{ code_dir|shquote }} && \
mkdir -p {{ policies_dir }} && \
echo scanning policies && \
terrascan scan -p {{ policies_dir }} --show-passed --iac-type terraform -l debug -o json >{{ scan_result_path }}
{% if not stop_on_violation %}RET=$?; [ $RET -eq {{ violations_exit_code }} ] && exit 0 || exit $RET
{% endif %}"""

SCAN_INIT_SCRIPT = r"""#!/bin/sh
git clone {{ repo_address|shquote }} code && \
cd {{ code_dir|shquote }} && \
git checkout -q {{ revision|shquote }} && echo check out $(git rev-parse --short HEAD).
"""

BACKEND_CONFIG = """terraform {
  backend "{{ state.backend|hclquote }}" {
    address = "{{ state.address|hclquote }}"
    scheme  = "{{ state.scheme|hclquote }}"
    path    = "{{ state.path|hclquote }}"
    lock    = true
    gzip    = false
  }
}

locals {
  cloudiac_ssh_user    = "root"
  cloudiac_private_key = "{{ private_key_path|hclquote }}"
}
"""

_STEP_SOURCES = {
    StepType.INIT: INIT_SCRIPT,
    StepType.PLAN: PLAN_SCRIPT,
    StepType.APPLY: APPLY_SCRIPT,
    StepType.CONFIGURE: CONFIGURE_SCRIPT,
    StepType.COMMAND: COMMAND_SCRIPT,
    StepType.COLLECT: COLLECT_SCRIPT,
    StepType.PARSE: PARSE_SCRIPT,
    StepType.SCAN: SCAN_SCRIPT,
    StepType.SCAN_INIT: SCAN_INIT_SCRIPT,
}


_HCL_ESCAPES = (
    ("\\", "\\\\"),
    ('"', '\\"'),
    ("\n", "\\n"),
    ("\r", "\\r"),
    ("\t", "\\t"),
    ("${", "$${"),
    ("%{", "%%{"),
)


def hcl_escape(value) -> str:
    """Escape a value for use inside a double-quoted HCL string."""
    text = str(value)
    for raw, escaped in _HCL_ESCAPES:
        text = text.replace(raw, escaped)
    return text


def create_environment() -> Environment:
    env = Environment(
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.filters["shquote"] = shlex.quote
    env.filters["hclquote"] = hcl_escape
    return env


class ScriptTemplates:
    """Compiled templates keyed by step type; never mutated after creation."""

    def __init__(self, steps: Mapping[StepType, Template], backend: Template):
        self._steps = MappingProxyType(dict(steps))
        self._backend = backend

    @classmethod
    def compile(cls, env: Optional[Environment] = None) -> "ScriptTemplates":
        env = env or create_environment()
        steps = {step_type: env.from_string(source) for step_type, source in _STEP_SOURCES.items()}
        # destroy runs a plan made with -destroy, so it applies that plan
        steps[StepType.DESTROY] = steps[StepType.APPLY]
        return cls(steps, env.from_string(BACKEND_CONFIG))

    @property
    def backend(self) -> Template:
        return self._backend

    def for_step(self, step_type: StepType) -> Template:
        try:
            return self._steps[step_type]
        except KeyError:
            raise UnknownTypeError(f"unknown step type '{step_type}'", {"step_type": str(step_type)}) from None


DEFAULT_TEMPLATES = ScriptTemplates.compile()
