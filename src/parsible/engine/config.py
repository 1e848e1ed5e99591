"""
Parser Configuration

Settings shared by the playbook and inventory pipelines.
"""

from dataclasses import dataclass, field, replace
from typing import FrozenSet, List, Set, Tuple


# Names whose value only exists once a play is running against a host
RUNTIME_VARIABLES = frozenset({
    'groups', 'group_names', 'inventory_hostname',
    'inventory_hostname_short', 'inventory_dir', 'inventory_file',
    'play_hosts', 'ansible_play_hosts', 'ansible_play_hosts_all',
    'ansible_play_batch', 'ansible_check_mode',
    'ansible_diff_mode', 'ansible_loop', 'ansible_index_var',
    'omit', 'role_path', 'environment',
})

# Names that hold gathered host facts
FACT_VARIABLES = frozenset({'ansible_facts', 'hostvars'})


@dataclass
class ParserConfig:
    """
    Configuration for a parse.

    Attributes:
        max_include_depth: Nesting bound for include/import expansion
        roles_path: Role search roots, relative to the playbook directory
            unless absolute
        runtime_fact_prefixes: Variable name prefixes treated as host facts
        runtime_variables: Magic names that are unknown before execution
        extra_modules: Module names accepted in addition to the builtins
    """

    max_include_depth: int = 100
    roles_path: List[str] = field(default_factory=lambda: ["roles"])
    runtime_fact_prefixes: Tuple[str, ...] = ("ansible_",)
    runtime_variables: FrozenSet[str] = RUNTIME_VARIABLES
    extra_modules: Set[str] = field(default_factory=set)

    def is_fact_name(self, name: str) -> bool:
        """Check whether an unbound name refers to a gathered host fact."""
        if name in self.runtime_variables:
            return False
        if name in FACT_VARIABLES:
            return True
        return any(name.startswith(prefix) for prefix in self.runtime_fact_prefixes)

    def is_runtime_name(self, name: str) -> bool:
        """Check whether an unbound name is only known at run time."""
        return name in self.runtime_variables or self.is_fact_name(name)


# Default configuration
_config = ParserConfig()


def get_config() -> ParserConfig:
    """Get the current default configuration."""
    return _config


def set_config(config: ParserConfig) -> None:
    """Set the default configuration."""
    global _config
    _config = config


def configure(**kwargs) -> ParserConfig:
    """Update selected settings of the default configuration."""
    global _config
    unknown = [key for key in kwargs if not hasattr(_config, key)]
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
    _config = replace(_config, **kwargs)
    return _config
