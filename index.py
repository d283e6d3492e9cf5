from aws_lambda_powertools.utilities.typing import LambdaContext

from imghandler.apihandler import index as apihandler
from imghandler.typing import ApiEvent, ApiResponse


def lambda_handler(
    event: ApiEvent,
    _: LambdaContext,
) -> ApiResponse:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = apihandler.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps({**ret, 'body': f'<{len(ret["body"])} bytes>'}))

  return ret
