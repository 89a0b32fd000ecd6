from . import enroll, provision

__all__ = ['enroll', 'provision']
