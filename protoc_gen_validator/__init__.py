'''protoc plugin generating Python validators from annotated .proto schemas.'''

__version__ = '0.1.0'
