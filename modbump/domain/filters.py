from typing import List

from pydantic import BaseModel, Field


class FilterConfig(BaseModel):
    """
    Allow/block rules deciding which modules may be updated.

    Rules are evaluated in order and the first match wins:
    allowed_modules, allowed_domains, blocked_modules, blocked_domains.
    When nothing matches, a module is allowed unless an allow list is set,
    in which case the policy becomes default-deny.
    """
    allowed_modules: List[str] = Field(default_factory=list)
    allowed_domains: List[str] = Field(default_factory=list)
    blocked_modules: List[str] = Field(default_factory=list)
    blocked_domains: List[str] = Field(default_factory=list)

    def is_module_allowed(self, module: str) -> bool:
        if module in self.allowed_modules:
            return True

        if any(module.startswith(domain) for domain in self.allowed_domains):
            return True

        if module in self.blocked_modules:
            return False

        if any(module.startswith(domain) for domain in self.blocked_domains):
            return False

        return not (self.allowed_modules or self.allowed_domains)
