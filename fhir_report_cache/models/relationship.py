"""Pydantic models describing report relationships and their resolved form."""

from enum import Enum

from pydantic import BaseModel, Field, model_validator


class FieldType(str, Enum):
    """Index field types a mapping can request."""

    TEXT = "text"
    KEYWORD = "keyword"
    INTEGER = "integer"
    DECIMAL = "decimal"


class DisplayFormat(BaseModel):
    """Human readable rendering of a resource, e.g. ``"%s %s"`` over given and family."""

    format: str = Field(default="%s", description="Template with one %s per path")
    paths: list[str] = Field(default_factory=list, description="FHIRPath expressions, in order")


class FieldMapping(BaseModel):
    """One output column of a report index."""

    output_name: str = Field(default=..., min_length=1, description="Column name in the index")
    path: str | None = Field(default=None, description="FHIRPath, comma separated for composites")
    function: str | None = Field(default=None, description="Registered external function name")
    function_inputs: list[str] = Field(
        default_factory=list, description="Columns the external function needs"
    )
    display_format: DisplayFormat | None = Field(
        default=None, description="Display of the record itself, or of referenced records"
    )
    auto_generated: bool = Field(default=False, description="Synthetic link-id column")
    value_modifier: str | None = Field(default=None, description="Conditional rewrite rule")
    type: FieldType | None = Field(default=None, description="Forced type, automatic when unset")

    @model_validator(mode="after")
    def check_extraction_rule(self) -> "FieldMapping":
        """Require one extraction rule."""
        if not (self.path or self.function or self.display_format):
            raise ValueError(
                f"field '{self.output_name}' needs a path, a function or a display format"
            )
        return self

    @property
    def is_link_column(self) -> bool:
        return self.output_name.startswith("__") and self.output_name.endswith("_link")


class ExternalHooks(BaseModel):
    """Names of host supplied callbacks attached to a relationship."""

    pre_disable: str | None = None
    post_run: str | None = None


class LinkSpec(BaseModel):
    """A child entity joined into the report rows of its parent alias."""

    name: str = Field(default=..., min_length=1, description="Alias of the child")
    resource: str = Field(default=..., min_length=1, description="FHIR resource type")
    link_to: str = Field(default=..., min_length=1, description="<parentAlias>[.<pathIntoParent>]")
    link_element: str = Field(default=..., min_length=1, description="Path in the child to the parent")
    link_element_search_parameter: str | None = Field(
        default=None, description="Search parameter matching link_element, for repair"
    )
    multiple: bool = Field(default=False, description="Many child rows per parent")
    query: str | None = Field(default=None, description="Legacy path=value&path=value filter")
    field_mappings: list[FieldMapping] = Field(default_factory=list)

    @property
    def parent_alias(self) -> str:
        return self.link_to.split(".", 1)[0]


class RelationshipSpec(BaseModel):
    """Definition of one report index."""

    id: str | None = Field(default=None, description="Catalog resource id")
    name: str = Field(default=..., min_length=1, description="Index name and root alias")
    resource: str = Field(default=..., min_length=1, description="Root FHIR resource type")
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    filter_expression: str | None = Field(default=None, description="Boolean FHIRPath")
    query: str | None = Field(default=None, description="Legacy path=value&path=value filter")
    caching_disabled: bool = Field(default=False)
    initial_filter: str | None = Field(
        default=None, description="Search parameters applied on full resync only"
    )
    external_hooks: ExternalHooks = Field(default_factory=ExternalHooks)
    links: list[LinkSpec] = Field(default_factory=list)

    @property
    def index_name(self) -> str:
        return self.name.lower()


class OrderedResource(BaseModel):
    """A relationship node after dependency resolution."""

    name: str
    resource: str
    link_to: str | None = None
    link_element: str | None = None
    link_element_search_parameter: str | None = None
    multiple: bool = False
    query: str | None = None
    filter_expression: str | None = None
    initial_filter: str | None = None
    field_mappings: list[FieldMapping] = Field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return self.link_to is None

    @property
    def parent_alias(self) -> str | None:
        if self.link_to is None:
            return None
        return self.link_to.split(".", 1)[0]

    @property
    def link_column(self) -> str:
        """Column on the parent rows holding the identity this node links through."""
        return f"__{self.name}_link"
