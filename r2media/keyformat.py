from r2media.typing import LogicalPath, ObjectKey


class KeyFormatter:
  prefix: str

  def __init__(self, prefix: str = ''):
    self.prefix = prefix.strip('/')

  def to_key(self, path: str) -> ObjectKey:
    path = path.lstrip('/')
    if self.prefix == '':
      return ObjectKey(path)

    return ObjectKey(f'{self.prefix}/{path}')

  def from_key(self, key: str) -> LogicalPath:
    key = key.lstrip('/')
    if self.prefix == '':
      return LogicalPath(key)

    # Keys without the prefix are taken as already logical.
    needle = f'{self.prefix}/'
    if key.startswith(needle):
      return LogicalPath(key[len(needle):])

    return LogicalPath(key)
