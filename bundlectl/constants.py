"""
Shared module to hold constant values for the library
"""

# The API group that owns the Bundle kind
API_GROUP = "bundlectl.io"
BUNDLE_API_VERSION = f"{API_GROUP}/v1"
BUNDLE_KIND = "Bundle"
BUNDLE_PLURAL = "bundles"

# Finalizer placed on every Bundle so that owned objects can be cleaned up
# before the Bundle disappears
FINALIZER_DELETE_RESOURCES = f"{API_GROUP}/deleteResources"

# Finalizer set by the API server when the Bundle is deleted with foreground
# propagation. When present, the garbage collector handles owned objects.
FOREGROUND_DELETION_FINALIZER = "foregroundDeletion"

# Label stamped onto every managed object
BUNDLE_NAME_LABEL = f"{API_GROUP}/bundle-name"

# Annotation that users may not set on templates
DELETION_TIMESTAMP_ANNOTATION = f"{API_GROUP}/deletionTimestamp"
PROHIBITED_ANNOTATIONS = [DELETION_TIMESTAMP_ANNOTATION]

# Annotations on a CustomResourceDefinition which describe when instances of
# that kind are ready
CR_FIELD_PATH_ANNOTATION = f"{API_GROUP}/cr-ready-when-field-path"
CR_FIELD_VALUE_ANNOTATION = f"{API_GROUP}/cr-ready-when-field-value"

# Reference token syntax
REFERENCE_OPEN = "{{"
REFERENCE_CLOSE = "}}"
REFERENCE_ESCAPE = "\\"
REFERENCE_SEPARATOR = "#"
REFERENCE_MODIFIER_SEPARATOR = ":"

# Modifier selecting the Secret produced by a ServiceBinding
REFERENCE_MODIFIER_BIND_SECRET = "bindsecret"

# Service catalog kinds that get special handling
SERVICE_CATALOG_GROUP = "servicecatalog.k8s.io"
SERVICE_BINDING_KIND = "ServiceBinding"
SERVICE_INSTANCE_KIND = "ServiceInstance"

# Kind of the CustomResourceDefinition objects
CRD_API_VERSION = "apiextensions.k8s.io/v1"
CRD_KIND = "CustomResourceDefinition"

# Default namespace if none given
DEFAULT_NAMESPACE = "default"

# Delimiter used for nested dict keys
NESTED_DICT_DELIM = "."

# Propagation policy used when deleting objects that left the Bundle
DELETE_PROPAGATION_FOREGROUND = "Foreground"

# Annotation holding the replicas last applied to a Deployment so that scaling
# by other controllers (e.g. an HPA) is not reverted
LAST_APPLIED_REPLICAS_ANNOTATION = f"{API_GROUP}/LastAppliedReplicas"
