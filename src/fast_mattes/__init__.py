from .metric import MattesMutualInformation, PDF_EPSILON
from .samples import SampleSet
from .transforms import TransformInfo, TranslationTransform, AffineTransform
from .kernels import KernelPair, make_kernel_pair
from .partitioning import DenseRegionPartitioner, SparseIndexPartitioner
from .accumulator import PartitionedAccumulator
from .histogram import HistogramConfiguration
from .exceptions import ConfigurationError, InvalidSampleError, InsufficientSamplesError

__all__ = [
    'MattesMutualInformation', 'PDF_EPSILON', 'SampleSet',
    'TransformInfo', 'TranslationTransform', 'AffineTransform',
    'KernelPair', 'make_kernel_pair',
    'DenseRegionPartitioner', 'SparseIndexPartitioner',
    'PartitionedAccumulator', 'HistogramConfiguration',
    'ConfigurationError', 'InvalidSampleError', 'InsufficientSamplesError',
]
