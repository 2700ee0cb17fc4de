from .dump import ParticleDumpWriter
from .manifest import read_manifest, sha256_file, write_manifest
from .metrics import MetricsWriter
